"""
SGX quote parsing structures and constants.

This module provides the data structure and parsing logic for SGX EPID
attestation quotes (version 1 and 2) as they appear in the
``isvEnclaveQuoteBody`` field of an attestation report.

The fixed header is described by a declarative layout table; a single
generic routine decodes (and encodes) every field from it. Bytes after the
fixed header are the quote signature and are never parsed.
"""

import struct
from dataclasses import dataclass
from typing import Dict, Tuple

from .types import QuoteTruncatedError, QuoteFieldOutOfRangeError

# =============================================================================
# Constants
# =============================================================================

QUOTE_BODY_SIZE = 0x1B0  # 432 bytes: header (48) + report body (384)

# Supported quote versions
QUOTE_VERSION_V1 = 1
QUOTE_VERSION_V2 = 2
SUPPORTED_QUOTE_VERSIONS = (QUOTE_VERSION_V1, QUOTE_VERSION_V2)

# Signature types
SIGN_TYPE_UNLINKABLE = 0
SIGN_TYPE_LINKABLE = 1

# Field sizes
BASENAME_SIZE = 0x20  # 32 bytes
CPU_SVN_SIZE = 0x10  # 16 bytes
MRENCLAVE_SIZE = 0x20  # 32 bytes
MRSIGNER_SIZE = 0x20  # 32 bytes
REPORT_DATA_SIZE = 0x40  # 64 bytes

# Bit 7 of the attributes flags marks a debug enclave
FLAGS_DEBUG = 1 << 7

# Field kinds
U16 = "u16"
U32 = "u32"
U64 = "u64"
BYTES = "bytes"
RESERVED = "reserved"

_STRUCT_FORMATS = {
    U16: "<H",
    U32: "<I",
    U64: "<Q",
}


@dataclass(frozen=True)
class FieldLayout:
    """One entry of the quote layout table."""
    name: str
    offset: int
    width: int
    kind: str

    @property
    def end(self) -> int:
        return self.offset + self.width


# All multi-byte integers are little-endian. Reserved ranges must be zero.
QUOTE_LAYOUT: Tuple[FieldLayout, ...] = (
    FieldLayout("version", 0x000, 2, U16),
    FieldLayout("sign_type", 0x002, 2, U16),
    FieldLayout("gid", 0x004, 4, U32),
    FieldLayout("qe_svn", 0x008, 2, U16),
    FieldLayout("pce_svn", 0x00A, 2, U16),
    FieldLayout("xeid", 0x00C, 4, RESERVED),
    FieldLayout("basename", 0x010, BASENAME_SIZE, BYTES),
    # Report body starts at 0x30
    FieldLayout("cpu_svn", 0x030, CPU_SVN_SIZE, BYTES),
    FieldLayout("misc_select", 0x040, 32, RESERVED),
    FieldLayout("flags", 0x060, 8, U64),
    FieldLayout("xfrm", 0x068, 8, U64),
    FieldLayout("mrenclave", 0x070, MRENCLAVE_SIZE, BYTES),
    FieldLayout("reserved1", 0x090, 32, RESERVED),
    FieldLayout("mrsigner", 0x0B0, MRSIGNER_SIZE, BYTES),
    FieldLayout("reserved2", 0x0D0, 96, RESERVED),
    FieldLayout("isv_prod_id", 0x130, 2, U16),
    FieldLayout("isv_svn", 0x132, 2, U16),
    FieldLayout("reserved3", 0x134, 60, RESERVED),
    FieldLayout("report_data", 0x170, REPORT_DATA_SIZE, BYTES),
)


def _check_layout() -> None:
    offset = 0
    for entry in QUOTE_LAYOUT:
        if entry.offset != offset:
            raise AssertionError(f"Quote layout gap before {entry.name}")
        if entry.kind in _STRUCT_FORMATS and struct.calcsize(_STRUCT_FORMATS[entry.kind]) != entry.width:
            raise AssertionError(f"Quote layout width mismatch for {entry.name}")
        offset = entry.end
    if offset != QUOTE_BODY_SIZE:
        raise AssertionError("Quote layout does not cover the fixed header")


_check_layout()


# =============================================================================
# Data Structures
# =============================================================================

@dataclass(frozen=True)
class Quote:
    """
    Parsed SGX quote.

    Holds the fixed header fields plus the trailing signature. Instances are
    produced by :func:`parse_quote` and never mutated.
    """
    version: int  # 2 bytes - 1 or 2
    sign_type: int  # 2 bytes - 0 (unlinkable) or 1 (linkable)
    gid: int  # 4 bytes - EPID group id
    qe_svn: int  # 2 bytes
    pce_svn: int  # 2 bytes
    basename: bytes  # 32 bytes
    cpu_svn: bytes  # 16 bytes
    flags: int  # 8 bytes - enclave attribute flags, bit 7 = debug
    xfrm: int  # 8 bytes - extended feature mask
    mrenclave: bytes  # 32 bytes - enclave code identity
    mrsigner: bytes  # 32 bytes - enclave signer identity
    isv_prod_id: int  # 2 bytes
    isv_svn: int  # 2 bytes
    report_data: bytes  # 64 bytes - binds the quote to a handshake key
    signature: bytes = b""  # Trailing bytes after the fixed header

    @property
    def is_sig_linkable(self) -> bool:
        return self.sign_type == SIGN_TYPE_LINKABLE

    def is_debug_quote(self) -> bool:
        """Return True if the enclave was launched in debug mode."""
        return (self.flags & FLAGS_DEBUG) != 0

    def body_bytes(self) -> bytes:
        """Re-serialize the fixed header (everything but the signature)."""
        return encode_quote_body(self)

    def __str__(self) -> str:
        return (
            f"Quote(version={self.version}, "
            f"sign_type={self.sign_type}, "
            f"mrenclave={self.mrenclave.hex()}, "
            f"mrsigner={self.mrsigner.hex()}, "
            f"isv_prod_id={self.isv_prod_id}, "
            f"isv_svn={self.isv_svn}, "
            f"debug={self.is_debug_quote()})"
        )


# =============================================================================
# Parsing Functions
# =============================================================================

def _decode_field(data: bytes, entry: FieldLayout):
    """Decode one layout entry. Caller guarantees ``data`` covers the header."""
    raw = data[entry.offset:entry.end]
    if len(raw) != entry.width:
        raise QuoteTruncatedError(
            f"Field {entry.name} needs {entry.width} bytes at 0x{entry.offset:x}, got {len(raw)}"
        )

    if entry.kind == RESERVED:
        if raw != b"\x00" * entry.width:
            raise QuoteFieldOutOfRangeError(
                f"Reserved field {entry.name} at 0x{entry.offset:x} is not zero"
            )
        return None

    if entry.kind == BYTES:
        return bytes(raw)

    return struct.unpack(_STRUCT_FORMATS[entry.kind], raw)[0]


def _validate_fields(fields: Dict[str, object]) -> None:
    if fields["version"] not in SUPPORTED_QUOTE_VERSIONS:
        raise QuoteFieldOutOfRangeError(
            f"Unsupported quote version: {fields['version']}. "
            f"Expected one of {SUPPORTED_QUOTE_VERSIONS}."
        )

    if fields["sign_type"] not in (SIGN_TYPE_UNLINKABLE, SIGN_TYPE_LINKABLE):
        raise QuoteFieldOutOfRangeError(
            f"Unsupported signature type: {fields['sign_type']}"
        )


def parse_quote(data: bytes) -> Quote:
    """
    Parse an SGX quote from raw bytes.

    Args:
        data: Raw quote bytes (the base64-decoded ``isvEnclaveQuoteBody`` or
              a full quote including its signature)

    Returns:
        Parsed Quote

    Raises:
        QuoteTruncatedError: If the input is shorter than the fixed header
        QuoteFieldOutOfRangeError: If a field holds an unsupported value
    """
    data = bytes(data)
    if len(data) < QUOTE_BODY_SIZE:
        raise QuoteTruncatedError(
            f"Quote too short: {len(data)} bytes, minimum {QUOTE_BODY_SIZE}"
        )

    fields: Dict[str, object] = {}
    for entry in QUOTE_LAYOUT:
        value = _decode_field(data, entry)
        if entry.kind != RESERVED:
            fields[entry.name] = value

    _validate_fields(fields)

    return Quote(signature=data[QUOTE_BODY_SIZE:], **fields)


def encode_quote_body(quote: Quote) -> bytes:
    """
    Serialize a quote's fixed header from its fields.

    Reserved ranges are written as zero, so for any quote accepted by
    :func:`parse_quote` this reproduces the original header bytes.
    """
    out = bytearray(QUOTE_BODY_SIZE)
    for entry in QUOTE_LAYOUT:
        if entry.kind == RESERVED:
            continue

        value = getattr(quote, entry.name)
        if entry.kind == BYTES:
            if len(value) != entry.width:
                raise QuoteFieldOutOfRangeError(
                    f"Field {entry.name} is {len(value)} bytes, expected {entry.width}"
                )
            out[entry.offset:entry.end] = value
        else:
            try:
                struct.pack_into(_STRUCT_FORMATS[entry.kind], out, entry.offset, value)
            except struct.error as e:
                raise QuoteFieldOutOfRangeError(f"Field {entry.name} out of range: {e}") from e

    return bytes(out)
