"""
Transport interfaces and the reference HTTP transport.

The client only talks to the network through :class:`AttestationTransport`.
``HttpTransport`` implements it over JSON/HTTPS with ``httpx``; binary
fields travel base64 encoded.
"""

import base64
import binascii
import logging
from dataclasses import dataclass, field
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Awaitable, Callable, Dict, Mapping, Optional, Protocol, Union

import httpx

from .attestation.registry import EnclaveDescriptor
from .attestation.types import (
    NetworkTimeoutError,
    ServerError,
    SessionRejectedError,
    UnreachableError,
)
from .envelope import EncryptedEnvelope

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

# Statuses meaning the server no longer accepts the session's request id
SESSION_REJECTED_STATUS_CODES = frozenset({401, 403, 409})


@dataclass(frozen=True)
class HandshakeResponse:
    """Everything the enclave returns for one attestation handshake"""
    server_ephemeral_public: bytes
    server_static_public: bytes
    quote: bytes
    encrypted_request_id: EncryptedEnvelope
    signature_body: bytes
    signature: bytes
    certificates: Union[bytes, str]
    cookies: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class KeyBackupToken:
    """Backup token issued by a key backup enclave for an attested session"""
    backup_id: bytes
    token: bytes = field(repr=False)
    tries: int


class AttestationTransport(Protocol):
    """Network collaborator used by the attestation client"""

    async def fetch_quote(
        self,
        descriptor: EnclaveDescriptor,
        client_public_key: bytes,
    ) -> HandshakeResponse:
        ...

    async def send_request(
        self,
        descriptor: EnclaveDescriptor,
        envelope: EncryptedEnvelope,
        *,
        address_count: Optional[int] = None,
    ) -> EncryptedEnvelope:
        ...

    async def fetch_token(
        self,
        descriptor: EnclaveDescriptor,
        cookies: Optional[Mapping[str, str]] = None,
    ) -> KeyBackupToken:
        ...

    async def send_feedback(self, status: str, reason: Optional[str] = None) -> None:
        ...


@dataclass(frozen=True)
class AuthCredentials:
    """Service credentials supplied by the account subsystem"""
    username: str
    password: str = field(repr=False)


CredentialProvider = Callable[[], Awaitable[Optional[AuthCredentials]]]


def static_credentials(username: str, password: str) -> CredentialProvider:
    """Credential provider that always returns the same username and password"""
    credentials = AuthCredentials(username, password)

    async def provider() -> AuthCredentials:
        return credentials

    return provider


# =============================================================================
# JSON helpers
# =============================================================================

def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _require(document: Mapping, key: str):
    try:
        return document[key]
    except (KeyError, TypeError):
        raise ServerError(f"Response is missing field {key!r}") from None


def _decode_b64_field(document: Mapping, key: str) -> bytes:
    value = _require(document, key)
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise ServerError(f"Response field {key!r} is not valid base64: {e}") from e


def _decode_text_field(document: Mapping, key: str) -> str:
    value = _require(document, key)
    if not isinstance(value, str):
        raise ServerError(f"Response field {key!r} must be a string")
    return value


def _json_body(response: httpx.Response) -> Mapping:
    try:
        document = response.json()
    except ValueError as e:
        raise ServerError(f"Response body is not valid JSON: {e}", response.status_code) from e
    if not isinstance(document, dict):
        raise ServerError("Response body must be a JSON object", response.status_code)
    return document


# =============================================================================
# HTTP transport
# =============================================================================

class HttpTransport:
    """
    JSON-over-HTTPS transport.

    Handshakes go to ``PUT /v1/attestation/{enclave}``. Requests with an
    ``address_count`` are contact discovery queries and go to
    ``/v1/discovery/{enclave}``; all others go to ``/v1/backup/{enclave}``.
    Backup tokens come from ``GET /v1/token/{enclave}`` and discovery
    feedback goes to ``PUT /v1/directory/feedback-v3/{status}``.

    Args:
        base_url: Service root, e.g. ``https://cds.example.org``
        credentials: Async provider of Basic auth credentials
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (used by tests)
    """

    def __init__(
        self,
        base_url: str,
        credentials: Optional[CredentialProvider] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._credentials = credentials
        # Cookies belong to one session and travel explicitly, never via a shared jar
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _auth(self) -> Optional[httpx.BasicAuth]:
        if self._credentials is None:
            return None
        credentials = await self._credentials()
        if credentials is None:
            return None
        return httpx.BasicAuth(credentials.username, credentials.password)

    async def _send(
        self,
        method: str,
        path: str,
        payload: Optional[Mapping] = None,
        cookies: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        headers = {}
        if cookies:
            headers["Cookie"] = "; ".join(f"{name}={value}" for name, value in cookies.items())

        kwargs = {"headers": headers}
        if payload is not None:
            kwargs["json"] = payload
        auth = await self._auth()
        if auth is not None:
            kwargs["auth"] = auth

        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkTimeoutError(f"Request to {path} timed out") from e
        except httpx.TransportError as e:
            raise UnreachableError(f"Request to {path} failed: {e}") from e

        if response.status_code in SESSION_REJECTED_STATUS_CODES:
            raise SessionRejectedError(
                f"Server rejected the session for {path} (HTTP {response.status_code})"
            )
        if response.status_code >= 400:
            raise ServerError(
                f"Server returned HTTP {response.status_code} for {path}",
                response.status_code,
            )

        logger.debug(f"{method} {path} -> HTTP {response.status_code} ({len(response.content)} bytes)")
        return response

    async def fetch_quote(
        self,
        descriptor: EnclaveDescriptor,
        client_public_key: bytes,
    ) -> HandshakeResponse:
        response = await self._send(
            "PUT",
            f"/v1/attestation/{descriptor.name}",
            {"clientPublic": _b64(client_public_key)},
        )
        document = _json_body(response)

        return HandshakeResponse(
            server_ephemeral_public=_decode_b64_field(document, "serverEphemeralPublic"),
            server_static_public=_decode_b64_field(document, "serverStaticPublic"),
            quote=_decode_b64_field(document, "quote"),
            encrypted_request_id=EncryptedEnvelope(
                request_id=b"",
                iv=_decode_b64_field(document, "iv"),
                mac=_decode_b64_field(document, "tag"),
                ciphertext=_decode_b64_field(document, "ciphertext"),
            ),
            signature_body=_decode_text_field(document, "signatureBody").encode("utf-8"),
            signature=_decode_b64_field(document, "signature"),
            certificates=_decode_text_field(document, "certificates"),
            cookies=dict(response.cookies),
        )

    async def send_request(
        self,
        descriptor: EnclaveDescriptor,
        envelope: EncryptedEnvelope,
        *,
        address_count: Optional[int] = None,
    ) -> EncryptedEnvelope:
        payload: Dict[str, object] = {
            "requestId": _b64(envelope.request_id),
            "data": _b64(envelope.ciphertext),
            "iv": _b64(envelope.iv),
            "mac": _b64(envelope.mac),
        }
        if address_count is not None:
            payload["addressCount"] = address_count
            path = f"/v1/discovery/{descriptor.name}"
        else:
            path = f"/v1/backup/{descriptor.name}"

        response = await self._send("PUT", path, payload, cookies=envelope.cookies)
        document = _json_body(response)

        if "requestId" in document:
            request_id = _decode_b64_field(document, "requestId")
        else:
            request_id = envelope.request_id

        return EncryptedEnvelope(
            request_id=request_id,
            iv=_decode_b64_field(document, "iv"),
            mac=_decode_b64_field(document, "mac"),
            ciphertext=_decode_b64_field(document, "data"),
            cookies=dict(response.cookies),
        )

    async def fetch_token(
        self,
        descriptor: EnclaveDescriptor,
        cookies: Optional[Mapping[str, str]] = None,
    ) -> KeyBackupToken:
        response = await self._send("GET", f"/v1/token/{descriptor.name}", cookies=cookies)
        document = _json_body(response)

        tries = _require(document, "tries")
        if not isinstance(tries, int) or isinstance(tries, bool) or tries < 0:
            raise ServerError(f"Response field 'tries' must be a non-negative integer, got {tries!r}")

        return KeyBackupToken(
            backup_id=_decode_b64_field(document, "backupId"),
            token=_decode_b64_field(document, "token"),
            tries=tries,
        )

    async def send_feedback(self, status: str, reason: Optional[str] = None) -> None:
        await self._send(
            "PUT",
            f"/v1/directory/feedback-v3/{status}",
            {"reason": reason or ""},
        )
