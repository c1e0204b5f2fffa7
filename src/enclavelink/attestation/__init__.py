from .abi_sgx import Quote, parse_quote, encode_quote_body
from .registry import EnclaveDescriptor, EnclaveRegistry
from .validate import AttestationProof, AttestationReport, AttestationValidator
from .cert_utils import load_trust_anchors
from .revocation import fetch_crl
from .types import (
    EnclaveLinkError,
    EnclaveNotFoundError,
    QuoteParseError,
    QuoteTruncatedError,
    QuoteFieldOutOfRangeError,
    AttestationError,
    MrenclaveMismatchError,
    DebugQuoteRejectedError,
    SignatureInvalidError,
    QuoteStatusRejectedError,
    CertificateRevokedError,
    ReportDataMismatchError,
    StaleAttestationError,
)

__all__ = [
    'Quote',
    'parse_quote',
    'encode_quote_body',
    'EnclaveDescriptor',
    'EnclaveRegistry',
    'AttestationProof',
    'AttestationReport',
    'AttestationValidator',
    'load_trust_anchors',
    'fetch_crl',
    'EnclaveLinkError',
    'EnclaveNotFoundError',
    'QuoteParseError',
    'QuoteTruncatedError',
    'QuoteFieldOutOfRangeError',
    'AttestationError',
    'MrenclaveMismatchError',
    'DebugQuoteRejectedError',
    'SignatureInvalidError',
    'QuoteStatusRejectedError',
    'CertificateRevokedError',
    'ReportDataMismatchError',
    'StaleAttestationError',
]
