"""
Certificate revocation lists for the attestation report signing chain.

The attestation authority publishes a CRL for its report signing
certificates. When a CRL URL is configured, the client fetches it here,
verifies it was signed by a trust anchor, and caches it on disk until its
``next_update`` time. The signature is re-verified on every cache hit.
"""

import hashlib
import logging
import os
import stat
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import platformdirs
import requests
from cryptography import x509

from .types import (
    CertificateRevokedError,
    NetworkTimeoutError,
    SignatureInvalidError,
    UnreachableError,
)

logger = logging.getLogger(__name__)

# Cache directory for revocation lists
_CRL_CACHE_DIR = platformdirs.user_cache_dir("enclavelink", "enclavelink")

# Cache directory permissions (owner-only)
_CACHE_DIR_MODE = stat.S_IRWXU  # 0700
_CACHE_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR  # 0600


class RevocationListError(SignatureInvalidError):
    """Raised when a revocation list cannot be parsed, verified or is stale."""
    pass


# =============================================================================
# Cache Helpers
# =============================================================================

def _ensure_cache_dir() -> bool:
    """
    Ensure cache directory exists with secure permissions (0700).

    Returns:
        True if directory exists/was created, False on failure
    """
    try:
        if not os.path.exists(_CRL_CACHE_DIR):
            os.makedirs(_CRL_CACHE_DIR, mode=_CACHE_DIR_MODE)
        else:
            os.chmod(_CRL_CACHE_DIR, _CACHE_DIR_MODE)
        return True
    except OSError:
        return False


def _crl_cache_path(url: str) -> str:
    """Get cache file path for a CRL (keyed by URL hash)."""
    digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:32]
    return os.path.join(_CRL_CACHE_DIR, f"crl_{digest}.der")


def _read_cache(cache_path: str) -> Optional[bytes]:
    if not os.path.isfile(cache_path):
        return None
    try:
        with open(cache_path, "rb") as f:
            return f.read()
    except OSError:
        return None


def _write_cache(cache_path: str, body: bytes) -> None:
    """
    Write a CRL to disk atomically with secure permissions.

    Uses write-to-temp + rename pattern to prevent partial writes.
    """
    if not _ensure_cache_dir():
        return

    tmp_path = cache_path + ".tmp"
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, _CACHE_FILE_MODE)
        try:
            os.write(fd, body)
        finally:
            os.close(fd)
        os.replace(tmp_path, cache_path)
    except OSError as e:
        logger.warning(f"Failed to write CRL cache {cache_path}: {e}")
        try:
            os.unlink(tmp_path)
        except OSError:
            pass


# =============================================================================
# Parsing and Verification
# =============================================================================

def _load_crl(body: bytes) -> x509.CertificateRevocationList:
    try:
        if body.lstrip().startswith(b"-----BEGIN"):
            return x509.load_pem_x509_crl(body)
        return x509.load_der_x509_crl(body)
    except ValueError as e:
        raise RevocationListError(f"Failed to parse CRL: {e}") from e


def _is_crl_fresh(crl: x509.CertificateRevocationList, now: Optional[datetime] = None) -> bool:
    """Check if CRL is still fresh (not expired)."""
    if now is None:
        now = datetime.now(timezone.utc)
    next_update = crl.next_update_utc
    if next_update is None:
        return False
    return now < next_update


def verify_crl_signature(
    crl: x509.CertificateRevocationList,
    trust_anchors: Sequence[x509.Certificate],
) -> None:
    """
    Verify that ``crl`` was issued and signed by one of ``trust_anchors``.

    Raises:
        RevocationListError: If no trust anchor signed the CRL
    """
    for anchor in trust_anchors:
        if anchor.subject != crl.issuer:
            continue
        try:
            if crl.is_signature_valid(anchor.public_key()):
                return
        except TypeError:
            # Unsupported key type for this anchor
            continue
    raise RevocationListError("CRL is not signed by any trust anchor")


def fetch_crl(
    url: str,
    trust_anchors: Sequence[x509.Certificate],
    timeout: float = 30.0,
) -> x509.CertificateRevocationList:
    """
    Fetch a CRL, with caching.

    Args:
        url: CRL distribution point
        trust_anchors: Certificates allowed to sign the CRL
        timeout: Request timeout in seconds

    Returns:
        Parsed, signature-checked CRL

    Raises:
        RevocationListError: If the CRL is malformed, unsigned or stale
        NetworkTimeoutError: If the request times out
        UnreachableError: If the request fails
    """
    cache_path = _crl_cache_path(url)

    # Try cache first
    cached = _read_cache(cache_path)
    if cached is not None:
        try:
            cached_crl = _load_crl(cached)
            if _is_crl_fresh(cached_crl):
                verify_crl_signature(cached_crl, trust_anchors)
                return cached_crl
        except RevocationListError as e:
            logger.debug(f"Ignoring cached CRL {cache_path}: {e}")

    # Cache miss or stale - fetch from the distribution point
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.Timeout as e:
        raise NetworkTimeoutError(f"Timed out fetching CRL from {url}") from e
    except requests.RequestException as e:
        raise UnreachableError(f"Failed to fetch CRL from {url}: {e}") from e

    raw_bytes = response.content
    crl = _load_crl(raw_bytes)
    verify_crl_signature(crl, trust_anchors)
    if not _is_crl_fresh(crl):
        raise RevocationListError(f"CRL from {url} is stale (next update {crl.next_update_utc})")

    _write_cache(cache_path, raw_bytes)
    logger.debug(f"Fetched CRL from {url} with {len(crl)} entries")
    return crl


def check_revocation(
    certs: Sequence[x509.Certificate],
    crls: Sequence[x509.CertificateRevocationList],
    now: Optional[datetime] = None,
) -> None:
    """
    Check every certificate in a chain against the CRLs of its issuer.

    Certificates whose issuer has no CRL in ``crls`` are not checked.

    Raises:
        RevocationListError: If an applicable CRL has expired
        CertificateRevokedError: If a certificate is revoked
    """
    for cert in certs:
        applicable: List[x509.CertificateRevocationList] = [
            crl for crl in crls if crl.issuer == cert.issuer
        ]
        for crl in applicable:
            if not _is_crl_fresh(crl, now):
                raise RevocationListError(
                    f"CRL for {cert.issuer.rfc4514_string()} has expired "
                    f"(next update was {crl.next_update_utc})"
                )
            revoked = crl.get_revoked_certificate_by_serial_number(cert.serial_number)
            if revoked is not None:
                raise CertificateRevokedError(
                    f"Certificate {cert.serial_number:x} "
                    f"({cert.subject.rfc4514_string()}) is revoked"
                )
