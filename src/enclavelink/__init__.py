from .attestation import (
    AttestationValidator,
    EnclaveDescriptor,
    EnclaveRegistry,
)
from .attestation.types import (
    EnclaveLinkError,
    EnclaveNotFoundError,
    QuoteParseError,
    AttestationError,
    EnvelopeCryptoError,
    MacInvalidError,
    IVExhaustionError,
    KeyAgreementError,
    NetworkError,
    NetworkTimeoutError,
    UnreachableError,
    ServerError,
    SessionRejectedError,
    SessionMismatchError,
    ServiceUnavailableError,
)
from .client import AttestationClient
from .config import ClientSettings
from .envelope import EncryptedEnvelope, decrypt, encrypt
from .services import ContactDiscoveryClient, KeyBackupClient
from .session import AttestationSession, SessionState
from .transport import (
    AttestationTransport,
    AuthCredentials,
    HandshakeResponse,
    HttpTransport,
    KeyBackupToken,
    static_credentials,
)

__version__ = "0.1.0"

__all__ = [
    "AttestationClient",
    "AttestationSession",
    "AttestationTransport",
    "AttestationValidator",
    "AuthCredentials",
    "ClientSettings",
    "ContactDiscoveryClient",
    "EnclaveDescriptor",
    "EnclaveRegistry",
    "EncryptedEnvelope",
    "HandshakeResponse",
    "HttpTransport",
    "KeyBackupClient",
    "KeyBackupToken",
    "SessionState",
    "decrypt",
    "encrypt",
    "static_credentials",
    "EnclaveLinkError",
    "EnclaveNotFoundError",
    "QuoteParseError",
    "AttestationError",
    "EnvelopeCryptoError",
    "MacInvalidError",
    "IVExhaustionError",
    "KeyAgreementError",
    "NetworkError",
    "NetworkTimeoutError",
    "UnreachableError",
    "ServerError",
    "SessionRejectedError",
    "SessionMismatchError",
    "ServiceUnavailableError",
]
