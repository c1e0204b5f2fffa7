"""
Unit tests for SGX quote parsing (abi_sgx.py).
"""

import random
import struct

import pytest

from enclavelink.attestation.abi_sgx import (
    FLAGS_DEBUG,
    QUOTE_BODY_SIZE,
    QUOTE_LAYOUT,
    QUOTE_VERSION_V1,
    QUOTE_VERSION_V2,
    SIGN_TYPE_LINKABLE,
    SIGN_TYPE_UNLINKABLE,
    Quote,
    encode_quote_body,
    parse_quote,
)
from enclavelink.attestation.types import (
    QuoteFieldOutOfRangeError,
    QuoteParseError,
    QuoteTruncatedError,
)

from enclave_fixtures import MRENCLAVE, MRSIGNER, build_quote, quote_bytes


def _offset(name: str) -> int:
    for entry in QUOTE_LAYOUT:
        if entry.name == name:
            return entry.offset
    raise KeyError(name)


def _patch(data: bytes, offset: int, value: bytes) -> bytes:
    return data[:offset] + value + data[offset + len(value):]


_flag_rng = random.Random(0x5E5E)
FLAG_VALUES = [
    0,
    FLAGS_DEBUG,
    FLAGS_DEBUG - 1,
    2**64 - 1,
    (2**64 - 1) & ~FLAGS_DEBUG,
] + [_flag_rng.getrandbits(64) for _ in range(12)]


def random_quote(rng: random.Random) -> Quote:
    return Quote(
        version=rng.choice([QUOTE_VERSION_V1, QUOTE_VERSION_V2]),
        sign_type=rng.choice([SIGN_TYPE_UNLINKABLE, SIGN_TYPE_LINKABLE]),
        gid=rng.getrandbits(32),
        qe_svn=rng.getrandbits(16),
        pce_svn=rng.getrandbits(16),
        basename=rng.randbytes(32),
        cpu_svn=rng.randbytes(16),
        flags=rng.getrandbits(64),
        xfrm=rng.getrandbits(64),
        mrenclave=rng.randbytes(32),
        mrsigner=rng.randbytes(32),
        isv_prod_id=rng.getrandbits(16),
        isv_svn=rng.getrandbits(16),
        report_data=rng.randbytes(64),
        signature=b"",
    )


# =============================================================================
# Layout
# =============================================================================

class TestQuoteLayout:
    """The layout table is contiguous and covers the fixed header."""

    def test_layout_is_contiguous(self):
        offset = 0
        for entry in QUOTE_LAYOUT:
            assert entry.offset == offset, entry.name
            offset = entry.end
        assert offset == QUOTE_BODY_SIZE == 432

    def test_known_offsets(self):
        assert _offset("mrenclave") == 0x70
        assert _offset("mrsigner") == 0xB0
        assert _offset("report_data") == 0x170


# =============================================================================
# Parsing
# =============================================================================

class TestParseQuote:
    """Tests for parse_quote()."""

    def test_parse_valid_quote(self):
        report_data = bytes(range(64))
        quote = parse_quote(quote_bytes(build_quote(report_data=report_data)))

        assert quote.version == 2
        assert quote.is_sig_linkable
        assert quote.gid == 0x00000B9A
        assert quote.qe_svn == 7
        assert quote.pce_svn == 9
        assert quote.mrenclave == MRENCLAVE
        assert quote.mrsigner == MRSIGNER
        assert quote.isv_prod_id == 1
        assert quote.isv_svn == 3
        assert quote.report_data == report_data
        assert quote.signature == b"\xee" * 64

    def test_fields_are_little_endian(self):
        data = quote_bytes(build_quote())
        assert data[_offset("gid"):_offset("gid") + 4] == struct.pack("<I", 0x00000B9A)

    def test_signature_is_trailing_bytes(self):
        quote = parse_quote(quote_bytes(build_quote(signature=b"")))
        assert quote.signature == b""

    def test_unlinkable_v1_quote(self):
        quote = parse_quote(quote_bytes(build_quote(version=QUOTE_VERSION_V1, sign_type=SIGN_TYPE_UNLINKABLE)))
        assert quote.version == 1
        assert not quote.is_sig_linkable

    @pytest.mark.parametrize("flags", FLAG_VALUES)
    def test_debug_flag(self, flags):
        quote = parse_quote(quote_bytes(build_quote(flags=flags)))
        assert quote.flags == flags
        assert quote.is_debug_quote() == bool(flags & FLAGS_DEBUG)

    def test_accepts_bytearray(self):
        quote = parse_quote(bytearray(quote_bytes(build_quote())))
        assert quote.mrenclave == MRENCLAVE


class TestParseQuoteErrors:
    """Malformed input is rejected before anything is trusted."""

    def test_empty_input(self):
        with pytest.raises(QuoteTruncatedError):
            parse_quote(b"")

    @pytest.mark.parametrize("length", [1, 48, QUOTE_BODY_SIZE - 1])
    def test_truncated_input(self, length):
        data = quote_bytes(build_quote())[:length]
        with pytest.raises(QuoteTruncatedError, match="too short"):
            parse_quote(data)

    def test_truncation_is_a_parse_error(self):
        with pytest.raises(QuoteParseError):
            parse_quote(b"\x00" * 10)

    @pytest.mark.parametrize("version", [0, 3, 0xFFFF])
    def test_unsupported_version(self, version):
        data = _patch(quote_bytes(build_quote()), 0, struct.pack("<H", version))
        with pytest.raises(QuoteFieldOutOfRangeError, match="version"):
            parse_quote(data)

    def test_unsupported_sign_type(self):
        data = _patch(quote_bytes(build_quote()), 2, struct.pack("<H", 2))
        with pytest.raises(QuoteFieldOutOfRangeError, match="signature type"):
            parse_quote(data)

    @pytest.mark.parametrize("field", ["xeid", "misc_select", "reserved1", "reserved2", "reserved3"])
    def test_nonzero_reserved_field(self, field):
        data = _patch(quote_bytes(build_quote()), _offset(field), b"\x01")
        with pytest.raises(QuoteFieldOutOfRangeError, match=field):
            parse_quote(data)


# =============================================================================
# Serialization
# =============================================================================

class TestEncodeQuoteBody:
    """Tests for encode_quote_body()."""

    @pytest.mark.parametrize("seed", range(8))
    def test_body_bytes_reproduce_header(self, seed):
        data = encode_quote_body(random_quote(random.Random(seed))) + b"\xee" * 64
        parsed = parse_quote(data)
        assert parsed.body_bytes() == data[:QUOTE_BODY_SIZE]
        assert encode_quote_body(parsed) == data[:QUOTE_BODY_SIZE]

    def test_wrong_width_field(self):
        with pytest.raises(QuoteFieldOutOfRangeError, match="mrenclave"):
            encode_quote_body(build_quote(mrenclave=b"\x01" * 31))

    def test_integer_out_of_range(self):
        with pytest.raises(QuoteFieldOutOfRangeError, match="version"):
            encode_quote_body(build_quote(version=0x10000))

    def test_str_does_not_include_report_data(self):
        text = str(build_quote(report_data=b"\xab" * 64))
        assert "abab" not in text
        assert MRENCLAVE.hex() in text
