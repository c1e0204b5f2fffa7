"""
Shared errors and protocol constants for enclave attestation.

This module is the canonical source for the error hierarchy used across the
quote parser, validator, key agreement, envelope codec and client. It has
no intra-package dependencies, so any module can import from it without
risk of circular imports.
"""

from typing import Optional


# =============================================================================
# Protocol-level constants
# =============================================================================

X25519_KEY_SIZE = 32          # Raw X25519 public key (bytes)
SESSION_KEY_SIZE = 32         # AES-256 key per direction (bytes)
AES_GCM_IV_SIZE = 12          # 96-bit GCM nonce (bytes)
AES_GCM_TAG_SIZE = 16         # GCM authentication tag (bytes)

# Random 96-bit IVs stay well inside the birthday bound up to 2^32 messages
MAX_ENCRYPTIONS_PER_SESSION = 2 ** 32

# Attestation report (signature body) constants
REPORT_API_VERSION = 3
DEFAULT_ACCEPTED_QUOTE_STATUSES = frozenset({"OK"})
DEFAULT_MAX_REPORT_AGE_SECONDS = 24 * 60 * 60
DEFAULT_CLOCK_SKEW_SECONDS = 5 * 60

DEFAULT_SESSION_VALIDITY_SECONDS = 10 * 60


# =============================================================================
# Errors
# =============================================================================

class EnclaveLinkError(Exception):
    """Base class for all enclavelink errors"""
    pass


class EnclaveNotFoundError(EnclaveLinkError, KeyError):
    """Raised when an enclave name is not in the registry"""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown enclave: {self.name}"


# --- Quote parsing -----------------------------------------------------------

class QuoteParseError(EnclaveLinkError):
    """Raised when an attestation quote is malformed"""
    pass

class QuoteTruncatedError(QuoteParseError):
    """Raised when a quote is shorter than the fixed header"""
    pass

class QuoteFieldOutOfRangeError(QuoteParseError):
    """Raised when a quote field holds a value outside its permitted range"""
    pass


# --- Attestation -------------------------------------------------------------

class AttestationError(EnclaveLinkError):
    """Base class for attestation trust failures"""
    pass

class MrenclaveMismatchError(AttestationError):
    """Raised when the quote's code or signer identity is not the expected one"""
    pass

class DebugQuoteRejectedError(AttestationError):
    """Raised when a debug enclave quote is presented to a production descriptor"""
    pass

class SignatureInvalidError(AttestationError):
    """Raised when the report signature or its certificate chain does not verify"""
    pass

class QuoteStatusRejectedError(SignatureInvalidError):
    """Raised when the attestation report carries a quote status we do not accept"""
    pass

class CertificateRevokedError(SignatureInvalidError):
    """Raised when a certificate in the report signing chain is revoked"""
    pass

class ReportDataMismatchError(AttestationError):
    """Raised when the quote's report data is not bound to the handshake key"""
    pass

class StaleAttestationError(AttestationError):
    """Raised when the attestation report timestamp is outside the accepted window"""
    pass


# --- Envelope crypto ---------------------------------------------------------

class EnvelopeCryptoError(EnclaveLinkError):
    """Base class for envelope encryption failures"""
    pass

class MacInvalidError(EnvelopeCryptoError):
    """Raised when an envelope's authentication tag does not verify"""
    pass

class IVExhaustionError(EnvelopeCryptoError):
    """Raised when a session has used up its IV budget"""
    pass

class KeyAgreementError(EnvelopeCryptoError):
    """Raised when the server's key material cannot be used for key agreement"""
    pass


# --- Transport ---------------------------------------------------------------

class NetworkError(EnclaveLinkError):
    """Base class for transport failures"""
    pass

class NetworkTimeoutError(NetworkError):
    """Raised when a transport call times out"""
    pass

class UnreachableError(NetworkError):
    """Raised when the service cannot be reached"""
    pass

class ServerError(NetworkError):
    """Raised when the service answers with an error or a malformed body"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionRejectedError(EnclaveLinkError):
    """Raised when the service no longer accepts the current session"""
    pass


# --- Programming errors and user-facing errors ---------------------------------

class SessionMismatchError(RuntimeError):
    """Raised when a session negotiated for one enclave is used for another"""
    pass


class ServiceUnavailableError(EnclaveLinkError):
    """
    Generic failure surfaced to consuming features.

    The specific cause is chained as ``__cause__``; ``kind`` names its class
    for diagnostics.
    """

    def __init__(self, service: str, kind: str):
        super().__init__(f"{service} is currently unavailable")
        self.service = service
        self.kind = kind
