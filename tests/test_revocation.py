"""
Tests for CRL fetching, caching and revocation checks (revocation.py).
"""

import os
import stat
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests
from cryptography.hazmat.primitives import serialization

from enclavelink.attestation import revocation
from enclavelink.attestation.revocation import (
    RevocationListError,
    check_revocation,
    fetch_crl,
    verify_crl_signature,
)
from enclavelink.attestation.types import (
    CertificateRevokedError,
    NetworkTimeoutError,
    SignatureInvalidError,
    UnreachableError,
)

from enclave_fixtures import FakeAuthority


CRL_URL = "https://crl.example/root.crl"


@pytest.fixture(scope="module")
def authority():
    return FakeAuthority()


@pytest.fixture(autouse=True)
def cache_dir(tmp_path, monkeypatch):
    path = tmp_path / "crl-cache"
    monkeypatch.setattr(revocation, "_CRL_CACHE_DIR", str(path))
    return path


def crl_response(crl, status: int = 200) -> MagicMock:
    response = MagicMock()
    response.content = crl.public_bytes(serialization.Encoding.DER)
    response.status_code = status
    response.raise_for_status.return_value = None
    return response


class TestFetchCrl:

    def test_fetch_and_cache(self, authority, cache_dir):
        crl = authority.crl()
        with patch.object(revocation.requests, "get", return_value=crl_response(crl)) as get:
            fetched = fetch_crl(CRL_URL, [authority.root_cert])

        get.assert_called_once_with(CRL_URL, timeout=30.0)
        assert fetched.issuer == authority.root_cert.subject

        cached = list(cache_dir.iterdir())
        assert len(cached) == 1
        assert stat.S_IMODE(os.stat(cached[0]).st_mode) == 0o600
        assert stat.S_IMODE(os.stat(cache_dir).st_mode) == 0o700

    def test_cache_hit_skips_network(self, authority):
        crl = authority.crl()
        with patch.object(revocation.requests, "get", return_value=crl_response(crl)):
            fetch_crl(CRL_URL, [authority.root_cert])

        with patch.object(revocation.requests, "get") as get:
            fetch_crl(CRL_URL, [authority.root_cert])
        get.assert_not_called()

    def test_stale_cache_refetched(self, authority):
        stale = authority.crl(next_update=datetime.now(timezone.utc) - timedelta(minutes=1))
        revocation._write_cache(revocation._crl_cache_path(CRL_URL), stale.public_bytes(serialization.Encoding.DER))

        fresh = authority.crl()
        with patch.object(revocation.requests, "get", return_value=crl_response(fresh)) as get:
            fetch_crl(CRL_URL, [authority.root_cert])
        get.assert_called_once()

    def test_stale_download_rejected(self, authority):
        stale = authority.crl(next_update=datetime.now(timezone.utc) - timedelta(minutes=1))
        with patch.object(revocation.requests, "get", return_value=crl_response(stale)):
            with pytest.raises(RevocationListError, match="stale"):
                fetch_crl(CRL_URL, [authority.root_cert])

    def test_unsigned_crl_rejected(self, authority):
        rogue = FakeAuthority("Rogue Root")
        with patch.object(revocation.requests, "get", return_value=crl_response(rogue.crl())):
            with pytest.raises(RevocationListError):
                fetch_crl(CRL_URL, [authority.root_cert])

    def test_garbage_rejected(self, authority):
        response = MagicMock(content=b"not a crl")
        with patch.object(revocation.requests, "get", return_value=response):
            with pytest.raises(RevocationListError, match="parse"):
                fetch_crl(CRL_URL, [authority.root_cert])

    def test_timeout(self, authority):
        with patch.object(revocation.requests, "get", side_effect=requests.Timeout("slow")):
            with pytest.raises(NetworkTimeoutError):
                fetch_crl(CRL_URL, [authority.root_cert])

    def test_http_error(self, authority):
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("404 Not Found")
        with patch.object(revocation.requests, "get", return_value=response):
            with pytest.raises(UnreachableError):
                fetch_crl(CRL_URL, [authority.root_cert])


class TestCheckRevocation:

    def test_revoked_leaf(self, authority):
        crl = authority.crl(revoked_serials=[authority.signing_cert.serial_number])
        with pytest.raises(CertificateRevokedError):
            check_revocation([authority.signing_cert, authority.root_cert], [crl])

    def test_revocation_is_a_signature_failure(self):
        assert issubclass(CertificateRevokedError, SignatureInvalidError)
        assert issubclass(RevocationListError, SignatureInvalidError)

    def test_unrevoked_chain(self, authority):
        crl = authority.crl(revoked_serials=[12345])
        check_revocation([authority.signing_cert, authority.root_cert], [crl])

    def test_crl_from_other_issuer_ignored(self, authority):
        rogue = FakeAuthority("Rogue Root")
        crl = rogue.crl(revoked_serials=[authority.signing_cert.serial_number])
        check_revocation([authority.signing_cert], [crl])

    def test_expired_crl(self, authority):
        crl = authority.crl(next_update=datetime.now(timezone.utc) - timedelta(minutes=1))
        with pytest.raises(RevocationListError, match="expired"):
            check_revocation([authority.signing_cert], [crl])

    def test_verify_crl_signature(self, authority):
        verify_crl_signature(authority.crl(), [authority.root_cert])
        with pytest.raises(RevocationListError):
            verify_crl_signature(authority.crl(), [FakeAuthority("Other").root_cert])
