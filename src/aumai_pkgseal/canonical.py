"""Canonical byte encoding used as the signing payload.

The wire grammar is a strict subset of bencode::

    integer ::= "i" ["-"] digits "e"
    bytes   ::= length ":" raw-bytes
    list    ::= "l" value* "e"
    map     ::= "d" (bytes value)* "e"

Values are modelled with plain Python types: ``int``, ``bytes``, ``list`` and
``dict`` keyed by ``bytes``.  Map entries are always emitted in ascending
byte order of their keys, so insertion order never affects the output.
:func:`decode` accepts exactly the bytes :func:`encode` would produce and
raises :class:`~aumai_pkgseal.errors.MalformedEncoding` for anything else.
"""

from __future__ import annotations

import re
from typing import Union

from aumai_pkgseal.errors import MalformedEncoding

CanonicalValue = Union[int, bytes, list["CanonicalValue"], dict[bytes, "CanonicalValue"]]

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1
MAX_DEPTH = 32

_INT_RE = re.compile(rb"-?(?:0|[1-9][0-9]*)")
_LENGTH_RE = re.compile(rb"0|[1-9][0-9]*")
_INT64_DIGITS = len(str(INT64_MAX))

# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode(value: CanonicalValue) -> bytes:
    """Return the canonical encoding of *value*.

    Raises:
        TypeError: if *value* contains anything other than ``int``, ``bytes``,
            ``list`` or ``dict`` with ``bytes`` keys.  ``bool`` is rejected.
        ValueError: if an integer is outside the signed 64-bit range or the
            value nests deeper than :data:`MAX_DEPTH`.
    """
    out: list[bytes] = []
    _encode_into(value, out, 0)
    return b"".join(out)


def _encode_into(value: CanonicalValue, out: list[bytes], depth: int) -> None:
    if depth > MAX_DEPTH:
        raise ValueError(f"Canonical value nests deeper than {MAX_DEPTH} levels")

    if isinstance(value, bool):
        raise TypeError("bool is not a canonical value; use 0 or 1")
    if isinstance(value, int):
        if not INT64_MIN <= value <= INT64_MAX:
            raise ValueError(f"Integer out of 64-bit range: {value}")
        out.append(b"i%de" % value)
    elif isinstance(value, (bytes, bytearray)):
        out.append(b"%d:" % len(value))
        out.append(bytes(value))
    elif isinstance(value, list):
        out.append(b"l")
        for item in value:
            _encode_into(item, out, depth + 1)
        out.append(b"e")
    elif isinstance(value, dict):
        out.append(b"d")
        for key in sorted(value):
            if not isinstance(key, bytes):
                raise TypeError(
                    f"Map keys must be bytes, got {type(key).__name__}"
                )
            out.append(b"%d:" % len(key))
            out.append(key)
            _encode_into(value[key], out, depth + 1)
        out.append(b"e")
    else:
        raise TypeError(f"Not a canonical value: {type(value).__name__}")


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode(data: bytes) -> CanonicalValue:
    """Parse exactly one canonical value spanning all of *data*.

    Raises:
        MalformedEncoding: on truncation, trailing bytes, non-minimal integers
            or lengths, a length prefix beyond the end of input, unknown type
            markers, or map keys that are not strictly ascending.
    """
    buf = bytes(data)
    value, end = _decode_at(buf, 0, 0)
    if end != len(buf):
        raise MalformedEncoding("Trailing bytes after canonical value", offset=end)
    return value


def _decode_at(buf: bytes, pos: int, depth: int) -> tuple[CanonicalValue, int]:
    if pos >= len(buf):
        raise MalformedEncoding("Unexpected end of input", offset=pos)
    if depth > MAX_DEPTH:
        raise MalformedEncoding(f"Nesting deeper than {MAX_DEPTH} levels", offset=pos)

    marker = buf[pos : pos + 1]
    if marker == b"i":
        end = buf.find(b"e", pos + 1)
        if end == -1:
            raise MalformedEncoding("Unterminated integer", offset=pos)
        return _parse_int(buf[pos + 1 : end], pos + 1), end + 1
    if marker == b"l":
        items: list[CanonicalValue] = []
        pos += 1
        while True:
            if pos >= len(buf):
                raise MalformedEncoding("Unterminated list", offset=pos)
            if buf[pos : pos + 1] == b"e":
                return items, pos + 1
            item, pos = _decode_at(buf, pos, depth + 1)
            items.append(item)
    if marker == b"d":
        mapping: dict[bytes, CanonicalValue] = {}
        previous: bytes | None = None
        pos += 1
        while True:
            if pos >= len(buf):
                raise MalformedEncoding("Unterminated map", offset=pos)
            if buf[pos : pos + 1] == b"e":
                return mapping, pos + 1
            if not buf[pos : pos + 1].isdigit():
                raise MalformedEncoding("Map key is not a byte string", offset=pos)
            key_offset = pos
            key, pos = _decode_bytes(buf, pos)
            if previous is not None and key <= previous:
                raise MalformedEncoding(
                    "Map keys are not strictly ascending", offset=key_offset
                )
            mapping[key], pos = _decode_at(buf, pos, depth + 1)
            previous = key
    if marker.isdigit():
        return _decode_bytes(buf, pos)
    raise MalformedEncoding(f"Unknown type marker {marker!r}", offset=pos)


def _parse_int(digits: bytes, offset: int) -> int:
    if not _INT_RE.fullmatch(digits) or digits == b"-0":
        raise MalformedEncoding(f"Invalid integer literal {digits!r}", offset=offset)
    if len(digits.lstrip(b"-")) > _INT64_DIGITS:
        raise MalformedEncoding("Integer out of 64-bit range", offset=offset)
    value = int(digits)
    if not INT64_MIN <= value <= INT64_MAX:
        raise MalformedEncoding("Integer out of 64-bit range", offset=offset)
    return value


def _decode_bytes(buf: bytes, pos: int) -> tuple[bytes, int]:
    colon = buf.find(b":", pos)
    if colon == -1:
        raise MalformedEncoding("Unterminated byte-string length", offset=pos)
    digits = buf[pos:colon]
    if not _LENGTH_RE.fullmatch(digits):
        raise MalformedEncoding(f"Invalid byte-string length {digits!r}", offset=pos)
    start = colon + 1
    if len(digits) > len(str(len(buf))):
        raise MalformedEncoding(
            "Byte-string length exceeds remaining input", offset=pos
        )
    end = start + int(digits)
    if end > len(buf):
        raise MalformedEncoding(
            "Byte-string length exceeds remaining input", offset=pos
        )
    return buf[start:end], end


# ---------------------------------------------------------------------------
# Shape helpers for from_canonical_value() implementations
# ---------------------------------------------------------------------------


def as_map(value: CanonicalValue, what: str) -> dict[bytes, CanonicalValue]:
    if not isinstance(value, dict):
        raise MalformedEncoding(f"{what} must be a map")
    return value


def as_list(value: CanonicalValue, what: str) -> list[CanonicalValue]:
    if not isinstance(value, list):
        raise MalformedEncoding(f"{what} must be a list")
    return value


def as_int(value: CanonicalValue, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEncoding(f"{what} must be an integer")
    return value


def as_bytes(value: CanonicalValue, what: str) -> bytes:
    if not isinstance(value, bytes):
        raise MalformedEncoding(f"{what} must be a byte string")
    return value


def as_text(value: CanonicalValue, what: str) -> str:
    try:
        return as_bytes(value, what).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedEncoding(f"{what} is not valid UTF-8") from exc


def field(
    mapping: dict[bytes, CanonicalValue],
    key: bytes,
    what: str,
    allowed: frozenset[bytes] | None = None,
) -> CanonicalValue:
    """Return ``mapping[key]``, rejecting missing keys and unexpected extras."""
    if allowed is not None:
        unexpected = set(mapping) - allowed
        if unexpected:
            names = ", ".join(sorted(k.decode("utf-8", "replace") for k in unexpected))
            raise MalformedEncoding(f"{what} has unexpected fields: {names}")
    try:
        return mapping[key]
    except KeyError:
        raise MalformedEncoding(
            f"{what} is missing field {key.decode('utf-8', 'replace')!r}"
        ) from None


__all__ = [
    "CanonicalValue",
    "INT64_MAX",
    "INT64_MIN",
    "MAX_DEPTH",
    "as_bytes",
    "as_int",
    "as_list",
    "as_map",
    "as_text",
    "decode",
    "encode",
    "field",
]
