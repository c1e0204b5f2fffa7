"""
Attestation validation.

Checks a parsed quote against the enclave registry and the attestation
authority's signed report, and binds it to the key the server presented
in the handshake.

Validation order (short-circuits on the first failure):
1. Code identity (mrenclave, and mrsigner when configured)
2. Debug flag
3. Report signature, certificate chain, revocation, report contents
4. Report data binding to the handshake public key
5. Report freshness
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from .abi_sgx import Quote, REPORT_DATA_SIZE
from .cert_utils import CertificateChainError, parse_pem_chain, verify_chain
from .registry import EnclaveDescriptor
from .revocation import check_revocation
from .types import (
    AttestationError,
    DEFAULT_CLOCK_SKEW_SECONDS,
    DEFAULT_MAX_REPORT_AGE_SECONDS,
    DebugQuoteRejectedError,
    MrenclaveMismatchError,
    QuoteStatusRejectedError,
    REPORT_API_VERSION,
    ReportDataMismatchError,
    SignatureInvalidError,
    StaleAttestationError,
    X25519_KEY_SIZE,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttestationReport:
    """Fields of the attestation authority's signed report that we rely on"""
    id: str
    timestamp: datetime
    version: int
    quote_status: str
    quote_body: bytes


@dataclass(frozen=True)
class AttestationProof:
    """Result of a successful validation, consumed by key agreement"""
    enclave_name: str
    mrenclave: bytes
    server_ephemeral_public: bytes
    server_static_public: bytes
    report_id: str
    timestamp: datetime


def _parse_timestamp(value: str) -> datetime:
    # Handle "2024-01-02T03:04:05.123456" (naive UTC) and "...Z"
    timestamp = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp


def parse_attestation_report(signature_body: Union[bytes, str]) -> AttestationReport:
    """
    Parse the JSON report signed by the attestation authority.

    Raises:
        SignatureInvalidError: If the report is malformed
    """
    try:
        document = json.loads(signature_body)
        timestamp = _parse_timestamp(document["timestamp"])
        return AttestationReport(
            id=str(document["id"]),
            timestamp=timestamp,
            version=int(document["version"]),
            quote_status=str(document["isvEnclaveQuoteStatus"]),
            quote_body=base64.b64decode(document["isvEnclaveQuoteBody"], validate=True),
        )
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SignatureInvalidError(f"Attestation report is not valid JSON: {e}") from e
    except KeyError as e:
        raise SignatureInvalidError(f"Attestation report is missing field {e}") from e
    except (binascii.Error, AttributeError, TypeError, ValueError) as e:
        raise SignatureInvalidError(f"Attestation report has a malformed field: {e}") from e


def verify_report_signature(
    signing_cert: x509.Certificate,
    signature: bytes,
    signature_body: bytes,
) -> None:
    """
    Verify the report signature with the leaf certificate's key.

    RSA keys use PKCS#1 v1.5, EC keys use ECDSA; both over SHA-256.

    Raises:
        SignatureInvalidError: If the signature does not verify
    """
    public_key = signing_cert.public_key()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, signature_body, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, signature_body, ec.ECDSA(hashes.SHA256()))
        else:
            raise SignatureInvalidError(
                f"Unsupported report signing key type: {type(public_key).__name__}"
            )
    except InvalidSignature:
        raise SignatureInvalidError(
            "Attestation report signature verification failed: signature does not match"
        ) from None


def expected_report_data(bound_public_key: bytes) -> bytes:
    """The report data an enclave commits to: the raw public key, zero padded."""
    return bound_public_key.ljust(REPORT_DATA_SIZE, b"\x00")


class AttestationValidator:
    """
    Validates quotes against expected identities and a trusted report chain.

    Args:
        trust_anchors: Root certificates of the attestation authority
        max_report_age: Oldest acceptable report, in seconds
        clock_skew: Allowance for reports timestamped in the future, in seconds
    """

    def __init__(
        self,
        trust_anchors: Sequence[x509.Certificate],
        max_report_age: float = DEFAULT_MAX_REPORT_AGE_SECONDS,
        clock_skew: float = DEFAULT_CLOCK_SKEW_SECONDS,
    ):
        if not trust_anchors:
            raise ValueError("At least one trust anchor is required")
        self.trust_anchors = list(trust_anchors)
        self.max_report_age = timedelta(seconds=max_report_age)
        self.clock_skew = timedelta(seconds=clock_skew)

    def validate(
        self,
        quote: Quote,
        descriptor: EnclaveDescriptor,
        bound_public_key: bytes,
        certificates: Union[bytes, str],
        signature: bytes,
        signature_body: bytes,
        server_ephemeral_public: Optional[bytes] = None,
        revocation_lists: Sequence[x509.CertificateRevocationList] = (),
        now: Optional[datetime] = None,
    ) -> AttestationProof:
        """
        Validate a quote for one handshake attempt.

        Args:
            quote: Parsed quote from the handshake response
            descriptor: Expected identity of the enclave
            bound_public_key: Server public key the quote must commit to
            certificates: PEM (optionally URL-encoded) report signing chain, leaf first
            signature: Report signature
            signature_body: The signed report (JSON bytes)
            server_ephemeral_public: Server ephemeral key carried into the proof
                (defaults to ``bound_public_key``)
            revocation_lists: CRLs to check the signing chain against
            now: Validation time (defaults to the current UTC time)

        Returns:
            AttestationProof for key agreement

        Raises:
            AttestationError: The specific subclass names the failed check
        """
        try:
            return self._validate(
                quote,
                descriptor,
                bound_public_key,
                certificates,
                signature,
                signature_body,
                server_ephemeral_public,
                revocation_lists,
                now,
            )
        except AttestationError as e:
            logger.error(
                f"Attestation of enclave {descriptor.name} failed "
                f"({type(e).__name__}): {e}"
            )
            raise

    def _validate(
        self,
        quote: Quote,
        descriptor: EnclaveDescriptor,
        bound_public_key: bytes,
        certificates: Union[bytes, str],
        signature: bytes,
        signature_body: bytes,
        server_ephemeral_public: Optional[bytes],
        revocation_lists: Sequence[x509.CertificateRevocationList],
        now: Optional[datetime],
    ) -> AttestationProof:
        if now is None:
            now = datetime.now(timezone.utc)

        # Step 1: Code identity
        if quote.mrenclave != descriptor.mrenclave:
            raise MrenclaveMismatchError(
                f"Quote mrenclave {quote.mrenclave.hex()} does not match "
                f"expected {descriptor.mrenclave.hex()}"
            )
        if descriptor.mrsigner is not None and quote.mrsigner != descriptor.mrsigner:
            raise MrenclaveMismatchError(
                f"Quote mrsigner {quote.mrsigner.hex()} does not match "
                f"expected {descriptor.mrsigner.hex()}"
            )

        # Step 2: Debug enclaves are never trusted unless explicitly allowed
        if quote.is_debug_quote() and not descriptor.allow_debug:
            raise DebugQuoteRejectedError(
                f"Quote for {descriptor.name} comes from a debug enclave"
            )

        # Step 3: Report signature and chain
        report = self._verify_report(
            quote, descriptor, certificates, signature, signature_body, revocation_lists, now
        )

        # Step 4: Report data binding
        if len(bound_public_key) != X25519_KEY_SIZE:
            raise ReportDataMismatchError(
                f"Bound public key is {len(bound_public_key)} bytes, expected {X25519_KEY_SIZE}"
            )
        if quote.report_data != expected_report_data(bound_public_key):
            raise ReportDataMismatchError(
                "Quote report data does not commit to the handshake public key"
            )

        # Step 5: Freshness
        if report.timestamp < now - self.max_report_age:
            raise StaleAttestationError(
                f"Attestation report from {report.timestamp.isoformat()} is older than "
                f"{self.max_report_age}"
            )
        if report.timestamp > now + self.clock_skew:
            raise StaleAttestationError(
                f"Attestation report timestamp {report.timestamp.isoformat()} is in the future"
            )

        return AttestationProof(
            enclave_name=descriptor.name,
            mrenclave=quote.mrenclave,
            server_ephemeral_public=server_ephemeral_public or bound_public_key,
            server_static_public=bound_public_key,
            report_id=report.id,
            timestamp=report.timestamp,
        )

    def _verify_report(
        self,
        quote: Quote,
        descriptor: EnclaveDescriptor,
        certificates: Union[bytes, str],
        signature: bytes,
        signature_body: bytes,
        revocation_lists: Sequence[x509.CertificateRevocationList],
        now: datetime,
    ) -> AttestationReport:
        try:
            chain = parse_pem_chain(certificates)
            verify_chain(chain, self.trust_anchors, "Report signing chain", now=now)
        except CertificateChainError as e:
            raise SignatureInvalidError(str(e)) from e

        if revocation_lists:
            check_revocation(chain, revocation_lists, now=now)

        verify_report_signature(chain[0], signature, signature_body)

        report = parse_attestation_report(signature_body)
        if report.version != REPORT_API_VERSION:
            raise SignatureInvalidError(
                f"Unsupported attestation report version {report.version}, "
                f"expected {REPORT_API_VERSION}"
            )
        if report.quote_body != quote.body_bytes():
            raise SignatureInvalidError("Signed report does not cover this quote")
        if report.quote_status not in descriptor.accepted_quote_statuses:
            raise QuoteStatusRejectedError(
                f"Quote status {report.quote_status} is not accepted for {descriptor.name}"
            )

        return report
