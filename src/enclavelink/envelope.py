"""
Authenticated encryption of request and response payloads.

Envelopes are AES-256-GCM with a random 96-bit IV per message. Requests
are sealed with the session's client key, responses opened with its server
key. The envelope's request id is bound in as associated data.
"""

import os
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .attestation.types import (
    AES_GCM_IV_SIZE,
    AES_GCM_TAG_SIZE,
    MacInvalidError,
    SessionMismatchError,
)
from .session import AttestationSession


@dataclass(frozen=True)
class EncryptedEnvelope:
    """One encrypted message, consumed once"""
    request_id: bytes
    iv: bytes
    mac: bytes
    ciphertext: bytes
    cookies: Mapping[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return (
            f"EncryptedEnvelope(request_id={self.request_id[:8].hex()}..., "
            f"ciphertext={len(self.ciphertext)} bytes)"
        )


def seal(key: bytes, iv: bytes, plaintext: bytes, associated_data: bytes = b"") -> Tuple[bytes, bytes]:
    """AES-GCM encrypt; returns (ciphertext, tag)"""
    sealed = AESGCM(key).encrypt(iv, plaintext, associated_data or None)
    return sealed[:-AES_GCM_TAG_SIZE], sealed[-AES_GCM_TAG_SIZE:]


def open_sealed(
    key: bytes,
    iv: bytes,
    ciphertext: bytes,
    tag: bytes,
    associated_data: bytes = b"",
) -> bytes:
    """
    AES-GCM decrypt and verify.

    Raises:
        MacInvalidError: If the IV or tag is malformed or the tag does not verify
    """
    if len(iv) != AES_GCM_IV_SIZE:
        raise MacInvalidError(f"IV is {len(iv)} bytes, expected {AES_GCM_IV_SIZE}")
    if len(tag) != AES_GCM_TAG_SIZE:
        raise MacInvalidError(f"MAC is {len(tag)} bytes, expected {AES_GCM_TAG_SIZE}")
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, associated_data or None)
    except InvalidTag:
        raise MacInvalidError("Envelope authentication failed") from None


def _check_enclave(session: AttestationSession, enclave_name: Optional[str]) -> None:
    if enclave_name is not None and enclave_name != session.enclave_name:
        raise SessionMismatchError(
            f"Session for enclave {session.enclave_name} used for {enclave_name}"
        )


def encrypt(
    session: AttestationSession,
    plaintext: bytes,
    enclave_name: Optional[str] = None,
    random_bytes: Callable[[int], bytes] = os.urandom,
) -> EncryptedEnvelope:
    """
    Seal ``plaintext`` for the enclave with the session's client key.

    Raises:
        IVExhaustionError: If the session's IV budget is spent
        SessionMismatchError: If ``enclave_name`` is not the session's enclave
    """
    _check_enclave(session, enclave_name)
    session.iv_budget.consume()

    iv = random_bytes(AES_GCM_IV_SIZE)
    ciphertext, mac = seal(session.client_key, iv, plaintext, session.request_id)
    return EncryptedEnvelope(
        request_id=session.request_id,
        iv=iv,
        mac=mac,
        ciphertext=ciphertext,
        cookies=dict(session.cookies),
    )


def decrypt(
    session: AttestationSession,
    envelope: EncryptedEnvelope,
    enclave_name: Optional[str] = None,
) -> bytes:
    """
    Open an envelope from the enclave with the session's server key.

    No plaintext is returned unless the tag verifies.

    Raises:
        MacInvalidError: If authentication fails
        SessionMismatchError: If ``enclave_name`` is not the session's enclave
    """
    _check_enclave(session, enclave_name)
    return open_sealed(
        session.server_key,
        envelope.iv,
        envelope.ciphertext,
        envelope.mac,
        envelope.request_id,
    )
