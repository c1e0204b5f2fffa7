"""
Contact discovery (CDS) and key backup (KBS) facades.

These are what application features call. Every enclavelink failure is
logged with its specific kind and surfaced as ``ServiceUnavailableError``,
with the original error chained as its cause.
"""

import logging
import struct
import uuid
from typing import Dict, Iterable, Optional

from .attestation.types import EnclaveLinkError, ServiceUnavailableError
from .client import AttestationClient
from .transport import KeyBackupToken

logger = logging.getLogger(__name__)

E164_ENCODED_SIZE = 8  # big-endian u64 per number
UUID_SIZE = 16

FEEDBACK_STATUSES = frozenset({"ok", "mismatch", "attestation-error", "unexpected-error"})
MAX_FEEDBACK_REASON_LENGTH = 1024

CONTACT_DISCOVERY = "Contact discovery"
KEY_BACKUP = "Key backup"


class ContactDiscoveryClient:
    """Looks up which phone numbers are registered, without revealing them to the server"""

    def __init__(self, client: AttestationClient):
        self._client = client

    async def discover(self, enclave: str, numbers: Iterable[int]) -> Dict[int, uuid.UUID]:
        """
        Query the discovery enclave for registered numbers.

        Args:
            enclave: Registered name of the discovery enclave
            numbers: Normalized E.164 numbers as integers

        Returns:
            Mapping of each registered number to its account UUID; numbers
            that are not registered are omitted

        Raises:
            ServiceUnavailableError: If the query could not be answered
        """
        # Preserve caller order, drop duplicates
        ordered = list(dict.fromkeys(numbers))
        if not ordered:
            return {}

        try:
            query = b"".join(struct.pack(">Q", number) for number in ordered)
        except struct.error as e:
            raise ValueError(f"Phone numbers must be unsigned 64-bit integers: {e}") from e

        try:
            reply = await self._client.request(enclave, query, address_count=len(ordered))
        except EnclaveLinkError as e:
            logger.error(f"{CONTACT_DISCOVERY} via {enclave} failed ({type(e).__name__}): {e}")
            raise ServiceUnavailableError(CONTACT_DISCOVERY, type(e).__name__) from e

        if len(reply) != UUID_SIZE * len(ordered):
            logger.error(
                f"{CONTACT_DISCOVERY} via {enclave} returned {len(reply)} bytes "
                f"for {len(ordered)} numbers"
            )
            raise ServiceUnavailableError(CONTACT_DISCOVERY, "MalformedResponse")

        registered = {}
        for index, number in enumerate(ordered):
            raw = reply[index * UUID_SIZE:(index + 1) * UUID_SIZE]
            if any(raw):
                registered[number] = uuid.UUID(bytes=raw)

        logger.debug(f"{CONTACT_DISCOVERY}: {len(registered)} of {len(ordered)} numbers registered")
        return registered

    async def report_feedback(self, status: str, reason: Optional[str] = None) -> None:
        """
        Tell the service how a discovery query went, e.g. after a mismatch
        with the legacy directory or an attestation failure.

        Args:
            status: One of ``FEEDBACK_STATUSES``
            reason: Free-form diagnostic, truncated to ``MAX_FEEDBACK_REASON_LENGTH``

        Raises:
            ValueError: If ``status`` is not a known feedback status
            ServiceUnavailableError: If the feedback could not be delivered
        """
        if status not in FEEDBACK_STATUSES:
            raise ValueError(f"Unknown feedback status {status!r}")
        if reason is not None:
            reason = reason[:MAX_FEEDBACK_REASON_LENGTH]

        try:
            await self._client.send_feedback(status, reason)
        except EnclaveLinkError as e:
            logger.error(f"{CONTACT_DISCOVERY} feedback failed ({type(e).__name__}): {e}")
            raise ServiceUnavailableError(CONTACT_DISCOVERY, type(e).__name__) from e


class KeyBackupClient:
    """Exchanges opaque key backup requests with a backup enclave"""

    def __init__(self, client: AttestationClient):
        self._client = client

    async def request(self, enclave: str, payload: bytes) -> bytes:
        """
        Send a serialized backup request and return the enclave's reply.

        Raises:
            ServiceUnavailableError: If the request could not be completed
        """
        try:
            return await self._client.request(enclave, payload)
        except EnclaveLinkError as e:
            logger.error(f"{KEY_BACKUP} via {enclave} failed ({type(e).__name__}): {e}")
            raise ServiceUnavailableError(KEY_BACKUP, type(e).__name__) from e

    async def token(self, enclave: str) -> KeyBackupToken:
        """
        Fetch the backup id, token and remaining tries for an attested session.

        Raises:
            ServiceUnavailableError: If the token could not be fetched
        """
        try:
            return await self._client.fetch_token(enclave)
        except EnclaveLinkError as e:
            logger.error(f"{KEY_BACKUP} token via {enclave} failed ({type(e).__name__}): {e}")
            raise ServiceUnavailableError(KEY_BACKUP, type(e).__name__) from e
