"""
Certificate utilities for attestation report verification.

This module provides certificate parsing, trust anchor loading and chain
verification used by the validator and the revocation list fetcher.
"""

import os
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Union
from urllib.parse import unquote

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization


class CertificateChainError(Exception):
    """Raised when certificate chain verification fails."""
    pass


def parse_pem_chain(pem_data: Union[bytes, str]) -> List[x509.Certificate]:
    """
    Parse concatenated PEM certificates.

    Handles:
    - Concatenated PEM certificates
    - URL-encoded chains (as sent in attestation report headers)
    - Leading/trailing whitespace and null bytes

    Args:
        pem_data: PEM-encoded certificate chain

    Returns:
        List of parsed certificates in order

    Raises:
        CertificateChainError: If parsing fails or no certificate is present
    """
    if isinstance(pem_data, bytes):
        pem_data = pem_data.decode("ascii", errors="replace")
    if "%" in pem_data:
        pem_data = unquote(pem_data)

    remaining = pem_data.encode("ascii", errors="replace")
    end_marker = b"-----END CERTIFICATE-----"
    certs = []

    while remaining:
        remaining = remaining.lstrip(b"\x00\n\r\t ")
        if not remaining:
            break

        end_pos = remaining.find(end_marker)
        if end_pos == -1:
            raise CertificateChainError("Trailing data after last PEM certificate")

        block = remaining[:end_pos + len(end_marker)]
        try:
            certs.append(x509.load_pem_x509_certificate(block))
        except ValueError as e:
            raise CertificateChainError(f"Failed to parse PEM certificate: {e}") from e
        remaining = remaining[end_pos + len(end_marker):]

    if not certs:
        raise CertificateChainError("Certificate chain is empty")

    return certs


def load_trust_anchors(source: Union[bytes, str, os.PathLike]) -> List[x509.Certificate]:
    """
    Load trust anchor certificates from PEM text or a PEM file path.

    Raises:
        CertificateChainError: If no certificate can be parsed
    """
    if isinstance(source, os.PathLike) or (
        isinstance(source, str) and "-----BEGIN" not in source
    ):
        with open(source, "rb") as f:
            source = f.read()
    return parse_pem_chain(source)


def _public_key_der(cert: x509.Certificate) -> bytes:
    return cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def verify_chain(
    certs: Sequence[x509.Certificate],
    trust_anchors: Sequence[x509.Certificate],
    chain_name: str = "Certificate chain",
    now: Optional[datetime] = None,
) -> x509.Certificate:
    """
    Verify a certificate chain against a set of trust anchors.

    Verification steps:
    1. Verify the chain's last certificate matches a trust anchor (by public key)
    2. Verify each certificate's validity period
    3. Verify each certificate was issued by the next cert in chain

    Args:
        certs: Certificate chain [leaf, intermediate(s)..., root]
        trust_anchors: Trusted root certificates
        chain_name: Human-readable name for error messages
        now: Verification time (defaults to the current UTC time)

    Returns:
        The matching trust anchor

    Raises:
        CertificateChainError: If chain verification fails
    """
    if not certs:
        raise CertificateChainError(f"{chain_name} is empty")
    if not trust_anchors:
        raise CertificateChainError("No trust anchors configured")

    # Step 1: Chain must end in a trust anchor
    chain_root = certs[-1]
    chain_root_pubkey = _public_key_der(chain_root)
    anchor = None
    for candidate in trust_anchors:
        if _public_key_der(candidate) == chain_root_pubkey:
            anchor = candidate
            break
    if anchor is None:
        raise CertificateChainError(
            f"{chain_name} root certificate does not match any trust anchor"
        )

    # Step 2: Validity periods
    if now is None:
        now = datetime.now(timezone.utc)
    for cert in certs:
        if now < cert.not_valid_before_utc:
            raise CertificateChainError(
                f"{chain_name}: certificate not yet valid (not before {cert.not_valid_before_utc})"
            )
        if now > cert.not_valid_after_utc:
            raise CertificateChainError(
                f"{chain_name}: certificate expired (not after {cert.not_valid_after_utc})"
            )

    # Step 3: Each cert[i] should be signed by cert[i+1]
    for i in range(len(certs) - 1):
        try:
            certs[i].verify_directly_issued_by(certs[i + 1])
        except InvalidSignature as e:
            raise CertificateChainError(
                f"{chain_name}: certificate {i} is not signed by its issuer"
            ) from e
        except (ValueError, TypeError) as e:
            raise CertificateChainError(
                f"{chain_name}: certificate chain signature verification failed: {e}"
            ) from e

    return anchor
