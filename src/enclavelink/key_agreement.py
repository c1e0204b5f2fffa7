"""
Session key derivation.

Both sides compute two X25519 shared secrets, one against the server's
ephemeral key and one against its attested static key, and expand them
with HKDF-SHA256. The salt is the three public keys in order, so every
handshake yields fresh keys:

    ikm  = X25519(client_eph, server_eph) || X25519(client_eph, server_static)
    salt = client_eph_pub || server_eph_pub || server_static_pub
    okm  = HKDF-SHA256(ikm, salt, info="", length=64)
    client_key = okm[:32]   (client -> server)
    server_key = okm[32:]   (server -> client)
"""

import logging
import time
from typing import Mapping, Optional, Tuple

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .attestation.types import (
    DEFAULT_SESSION_VALIDITY_SECONDS,
    KeyAgreementError,
    SESSION_KEY_SIZE,
    X25519_KEY_SIZE,
)
from .attestation.validate import AttestationProof
from .crypto import raw_public_key
from .envelope import EncryptedEnvelope, open_sealed
from .session import AttestationSession

logger = logging.getLogger(__name__)


def _load_public_key(name: str, data: bytes) -> x25519.X25519PublicKey:
    if len(data) != X25519_KEY_SIZE:
        raise KeyAgreementError(f"{name} is {len(data)} bytes, expected {X25519_KEY_SIZE}")
    try:
        return x25519.X25519PublicKey.from_public_bytes(data)
    except ValueError as e:
        raise KeyAgreementError(f"Invalid {name}: {e}") from e


def _exchange(private_key: x25519.X25519PrivateKey, public_key: x25519.X25519PublicKey) -> bytes:
    try:
        return private_key.exchange(public_key)
    except ValueError as e:
        # Raised for low-order points (all-zero shared secret)
        raise KeyAgreementError(f"Key exchange failed: {e}") from e


def _expand(ikm: bytes, salt: bytes) -> Tuple[bytes, bytes]:
    okm = HKDF(
        algorithm=hashes.SHA256(),
        length=2 * SESSION_KEY_SIZE,
        salt=salt,
        info=b"",
    ).derive(ikm)
    return okm[:SESSION_KEY_SIZE], okm[SESSION_KEY_SIZE:]


def derive_keys(
    client_private_key: x25519.X25519PrivateKey,
    server_ephemeral_public: bytes,
    server_static_public: bytes,
) -> Tuple[bytes, bytes]:
    """Client side: returns (client_key, server_key)"""
    server_ephemeral = _load_public_key("server ephemeral public key", server_ephemeral_public)
    server_static = _load_public_key("server static public key", server_static_public)

    ikm = (
        _exchange(client_private_key, server_ephemeral)
        + _exchange(client_private_key, server_static)
    )
    salt = raw_public_key(client_private_key) + server_ephemeral_public + server_static_public
    return _expand(ikm, salt)


def derive_enclave_keys(
    server_ephemeral_private: x25519.X25519PrivateKey,
    server_static_private: x25519.X25519PrivateKey,
    client_public: bytes,
) -> Tuple[bytes, bytes]:
    """Enclave side of :func:`derive_keys`: returns the same (client_key, server_key)"""
    client = _load_public_key("client public key", client_public)

    ikm = (
        _exchange(server_ephemeral_private, client)
        + _exchange(server_static_private, client)
    )
    salt = client_public + raw_public_key(server_ephemeral_private) + raw_public_key(server_static_private)
    return _expand(ikm, salt)


def derive_session(
    client_private_key: x25519.X25519PrivateKey,
    server_ephemeral_public: bytes,
    proof: AttestationProof,
    encrypted_request_id: EncryptedEnvelope,
    cookies: Optional[Mapping[str, str]] = None,
    validity: float = DEFAULT_SESSION_VALIDITY_SECONDS,
    now: Optional[float] = None,
) -> AttestationSession:
    """
    Derive session keys for an attested enclave and open the server-issued
    request id.

    Args:
        client_private_key: Client ephemeral key used for this handshake
        server_ephemeral_public: Server ephemeral key from the handshake response
        proof: Result of validating the handshake's quote
        encrypted_request_id: Request id sealed with the server key
        cookies: Transport cookies to replay with every request
        validity: Session lifetime in seconds
        now: Creation time (defaults to ``time.time()``)

    Raises:
        KeyAgreementError: If a server key is malformed
        MacInvalidError: If the request id does not decrypt
    """
    client_key, server_key = derive_keys(
        client_private_key,
        server_ephemeral_public,
        proof.server_static_public,
    )
    if client_key == server_key:
        raise KeyAgreementError("Derived identical keys for both directions")

    request_id = open_sealed(
        server_key,
        encrypted_request_id.iv,
        encrypted_request_id.ciphertext,
        encrypted_request_id.mac,
    )

    logger.debug(
        f"Derived session keys for {proof.enclave_name} "
        f"(report {proof.report_id}, request id {len(request_id)} bytes)"
    )

    return AttestationSession(
        enclave_name=proof.enclave_name,
        client_private_key=client_private_key,
        server_ephemeral_public=server_ephemeral_public,
        server_static_public=proof.server_static_public,
        client_key=client_key,
        server_key=server_key,
        request_id=request_id,
        cookies=dict(cookies or {}),
        created_at=time.time() if now is None else now,
        validity=validity,
    )
