"""
Attestation client: session lifecycle and encrypted requests.

One session is cached per enclave. Concurrent callers needing a session for
the same enclave share one in-flight handshake; a caller giving up on its
wait never aborts the handshake for the others.

Failure policy:
- handshake failures (parse, attestation, key agreement, network) surface
  to every waiter and the next call starts a fresh handshake;
- a MAC failure, an exhausted IV budget or a session rejection during a
  request drops the session and the request is retried once on a fresh
  session;
- a network failure during a request drops the session and propagates.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Sequence

from cryptography import x509

from .attestation.abi_sgx import parse_quote
from .attestation.cert_utils import load_trust_anchors
from .attestation.registry import EnclaveDescriptor, EnclaveRegistry
from .attestation.revocation import fetch_crl
from .attestation.types import (
    DEFAULT_SESSION_VALIDITY_SECONDS,
    IVExhaustionError,
    MacInvalidError,
    NetworkError,
    QuoteParseError,
    SessionRejectedError,
)
from .attestation.validate import AttestationValidator
from .config import ClientSettings
from .crypto import CryptoProvider, DefaultCryptoProvider, raw_public_key
from .envelope import decrypt, encrypt
from .key_agreement import derive_session
from .session import AttestationSession, SessionState
from .transport import (
    DEFAULT_TIMEOUT,
    AttestationTransport,
    CredentialProvider,
    HttpTransport,
    KeyBackupToken,
)

logger = logging.getLogger(__name__)


class AttestationClient:
    """
    Establishes attested sessions with registered enclaves and exchanges
    encrypted requests over them.

    Args:
        registry: Enclaves this client may talk to
        transport: Network collaborator
        validator: Attestation validator holding the trust anchors
        crypto: Source of ephemeral keys and IVs
        session_validity: Session lifetime in seconds
        clock: Returns the current time in seconds since the epoch
        revocation_url: CRL for the report signing chain, checked on every handshake
        revocation_timeout: Timeout for fetching the CRL, in seconds
    """

    def __init__(
        self,
        registry: EnclaveRegistry,
        transport: AttestationTransport,
        validator: AttestationValidator,
        crypto: Optional[CryptoProvider] = None,
        session_validity: float = DEFAULT_SESSION_VALIDITY_SECONDS,
        clock: Callable[[], float] = time.time,
        revocation_url: Optional[str] = None,
        revocation_timeout: float = DEFAULT_TIMEOUT,
    ):
        self._registry = registry
        self._transport = transport
        self._validator = validator
        self._crypto = crypto or DefaultCryptoProvider()
        self._session_validity = session_validity
        self._clock = clock
        self._revocation_url = revocation_url
        self._revocation_timeout = revocation_timeout

        self._sessions: Dict[str, AttestationSession] = {}
        self._handshakes: Dict[str, asyncio.Task] = {}
        self._failed: Dict[str, bool] = {}
        self._in_flight: Dict[str, int] = {}
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        credentials: Optional[CredentialProvider] = None,
        transport: Optional[AttestationTransport] = None,
        crypto: Optional[CryptoProvider] = None,
    ) -> "AttestationClient":
        """Build a client with the default collaborators for ``settings``"""
        registry = EnclaveRegistry.from_json(
            settings.registry_path,
            allow_debug_enclaves=settings.allow_debug_enclaves,
        )
        validator = AttestationValidator(
            load_trust_anchors(settings.trust_anchors_path),
            max_report_age=settings.max_report_age,
            clock_skew=settings.clock_skew,
        )
        if transport is None:
            transport = HttpTransport(
                settings.service_url,
                credentials=credentials,
                timeout=settings.timeout,
            )
        return cls(
            registry,
            transport,
            validator,
            crypto=crypto,
            session_validity=settings.session_validity,
            revocation_url=settings.crl_url,
            revocation_timeout=settings.timeout,
        )

    async def __aenter__(self) -> "AttestationClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def state(self, name: str) -> SessionState:
        """Current state of the session with enclave ``name``"""
        self._registry.lookup(name)

        if name in self._handshakes:
            return SessionState.HANDSHAKING
        session = self._sessions.get(name)
        if session is not None:
            if session.is_expired(self._clock()):
                return SessionState.EXPIRED
            if self._in_flight.get(name):
                return SessionState.REQUESTING
            return SessionState.ESTABLISHED
        if self._failed.get(name):
            return SessionState.FAILED
        return SessionState.UNATTESTED

    async def session(self, name: str) -> AttestationSession:
        """
        Return a live session with enclave ``name``, attesting it first if needed.

        Raises:
            EnclaveNotFoundError: If ``name`` is not registered
            QuoteParseError: If the enclave's quote is malformed
            AttestationError: If the enclave fails attestation
            EnvelopeCryptoError: If key agreement fails
            NetworkError: If the handshake cannot be completed
        """
        if self._closed:
            raise RuntimeError("AttestationClient is closed")
        descriptor = self._registry.lookup(name)

        session = self._sessions.get(name)
        if session is not None:
            if not session.is_expired(self._clock()):
                return session
            logger.info(f"Session with enclave {name} expired")
            self._discard(name, session)

        task = self._handshakes.get(name)
        if task is None:
            task = asyncio.create_task(self._handshake(descriptor))
            task.add_done_callback(_retrieve_exception)
            self._handshakes[name] = task

        return await asyncio.shield(task)

    def invalidate(self, name: str) -> None:
        """Drop the cached session for ``name``; the next call re-attests"""
        self._registry.lookup(name)
        session = self._sessions.pop(name, None)
        if session is not None:
            logger.info(f"Invalidated session with enclave {name}")

    async def aclose(self) -> None:
        """Cancel pending handshakes, drop all sessions and close the transport"""
        if self._closed:
            return
        self._closed = True

        handshakes = list(self._handshakes.values())
        for task in handshakes:
            task.cancel()
        if handshakes:
            await asyncio.gather(*handshakes, return_exceptions=True)
        self._handshakes.clear()
        self._sessions.clear()

        close = getattr(self._transport, "aclose", None)
        if close is not None:
            await close()

    def _discard(self, name: str, session: AttestationSession) -> None:
        # A concurrent request may already have installed a replacement
        if self._sessions.get(name) is session:
            del self._sessions[name]

    async def _handshake(self, descriptor: EnclaveDescriptor) -> AttestationSession:
        name = descriptor.name
        logger.info(f"Starting attestation handshake with enclave {name}")
        try:
            session = await self._attest(descriptor)
        except Exception:
            self._failed[name] = True
            raise
        finally:
            if self._handshakes.get(name) is asyncio.current_task():
                del self._handshakes[name]

        self._sessions[name] = session
        self._failed[name] = False
        logger.info(f"Established attested session with enclave {name}")
        return session

    async def _attest(self, descriptor: EnclaveDescriptor) -> AttestationSession:
        name = descriptor.name
        client_key = self._crypto.generate_private_key()

        response = await self._transport.fetch_quote(descriptor, raw_public_key(client_key))
        logger.debug(
            f"Handshake response from {name}: quote {len(response.quote)} bytes, "
            f"report {len(response.signature_body)} bytes"
        )

        try:
            quote = parse_quote(response.quote)
        except QuoteParseError as e:
            logger.error(f"Attestation of enclave {name} failed ({type(e).__name__}): {e}")
            raise

        revocation_lists = await self._revocation_lists()

        now = self._clock()
        proof = self._validator.validate(
            quote,
            descriptor,
            response.server_static_public,
            response.certificates,
            response.signature,
            response.signature_body,
            server_ephemeral_public=response.server_ephemeral_public,
            revocation_lists=revocation_lists,
            now=datetime.fromtimestamp(now, timezone.utc),
        )

        return derive_session(
            client_key,
            response.server_ephemeral_public,
            proof,
            response.encrypted_request_id,
            cookies=response.cookies,
            validity=self._session_validity,
            now=now,
        )

    async def _revocation_lists(self) -> Sequence[x509.CertificateRevocationList]:
        if self._revocation_url is None:
            return ()
        crl = await asyncio.to_thread(
            fetch_crl,
            self._revocation_url,
            self._validator.trust_anchors,
            self._revocation_timeout,
        )
        return (crl,)

    # =========================================================================
    # Requests
    # =========================================================================

    async def request(
        self,
        name: str,
        plaintext: bytes,
        *,
        address_count: Optional[int] = None,
    ) -> bytes:
        """
        Send ``plaintext`` to enclave ``name`` and return the decrypted reply.

        Args:
            name: Registered enclave name
            plaintext: Request payload
            address_count: Number of addresses in a contact discovery query

        Raises:
            MacInvalidError: If the reply fails authentication twice
            IVExhaustionError: If a fresh session's IV budget is also exhausted
            SessionRejectedError: If the server rejects two sessions in a row
            NetworkError: If the request cannot be delivered
        """
        descriptor = self._registry.lookup(name)

        # Handshake failures surface as they are; only the exchange is retried
        session = await self.session(name)
        try:
            return await self._exchange(descriptor, session, plaintext, address_count)
        except (MacInvalidError, IVExhaustionError, SessionRejectedError) as e:
            logger.warning(
                f"Session with enclave {name} failed ({type(e).__name__}), "
                "retrying once on a fresh session"
            )

        return await self._exchange(descriptor, await self.session(name), plaintext, address_count)

    async def _exchange(
        self,
        descriptor: EnclaveDescriptor,
        session: AttestationSession,
        plaintext: bytes,
        address_count: Optional[int],
    ) -> bytes:
        name = descriptor.name
        try:
            envelope = encrypt(session, plaintext, name, self._crypto.random_bytes)
        except IVExhaustionError:
            self._discard(name, session)
            raise

        self._in_flight[name] = self._in_flight.get(name, 0) + 1
        try:
            response = await self._transport.send_request(
                descriptor, envelope, address_count=address_count
            )
            reply = decrypt(session, response, name)
        except (MacInvalidError, SessionRejectedError, NetworkError):
            self._discard(name, session)
            raise
        finally:
            self._in_flight[name] -= 1

        logger.debug(f"Request to {name}: sent {len(plaintext)} bytes, received {len(reply)} bytes")
        return reply

    # =========================================================================
    # Unencrypted service calls
    # =========================================================================

    async def fetch_token(self, name: str) -> KeyBackupToken:
        """
        Fetch the backup token for enclave ``name`` over its attested session.

        The token request carries the session's cookies so it reaches the
        enclave instance that was attested. A rejection drops the session.
        """
        descriptor = self._registry.lookup(name)
        session = await self.session(name)
        try:
            token = await self._transport.fetch_token(descriptor, session.cookies)
        except (SessionRejectedError, NetworkError):
            self._discard(name, session)
            raise
        logger.debug(f"Fetched backup token from {name} ({token.tries} tries left)")
        return token

    async def send_feedback(self, status: str, reason: Optional[str] = None) -> None:
        """Report the outcome of a contact discovery query to the service"""
        if self._closed:
            raise RuntimeError("AttestationClient is closed")
        await self._transport.send_feedback(status, reason)


def _retrieve_exception(task: asyncio.Task) -> None:
    # Handshakes whose waiters all went away must not warn about unretrieved errors
    if not task.cancelled():
        task.exception()
