"""
Bencode Codec for Cross-Seeder
Decodes and canonically re-encodes torrent metadata, computes info-hashes
and extracts file lists.
"""

import hashlib
import logging
from typing import Dict, List, Optional, Union

from .exceptions import DecodeError
from .matcher import FileInfo

logger = logging.getLogger(__name__)

BencodeValue = Union[int, bytes, List["BencodeValue"], Dict[bytes, "BencodeValue"]]

_DIGITS = b"0123456789"


class _Decoder:
    """Recursive-descent decoder over an explicit cursor."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def _peek(self) -> int:
        if self.pos >= len(self.data):
            raise DecodeError("Unexpected end of data", self.pos)
        return self.data[self.pos]

    def decode_value(self) -> BencodeValue:
        token = self._peek()
        if token == ord("i"):
            return self._decode_int()
        if token == ord("l"):
            return self._decode_list()
        if token == ord("d"):
            return self._decode_dict()
        if token in _DIGITS:
            return self._decode_bytes()
        raise DecodeError(f"Unknown bencode type {chr(token)!r}", self.pos)

    def _decode_int(self) -> int:
        start = self.pos
        end = self.data.find(b"e", start + 1)
        if end == -1:
            raise DecodeError("Unterminated integer", start)

        raw = self.data[start + 1:end]
        digits = raw[1:] if raw.startswith(b"-") else raw
        if not digits or any(c not in _DIGITS for c in digits):
            raise DecodeError(f"Invalid integer {raw!r}", start)
        if (digits.startswith(b"0") and len(digits) > 1) or raw == b"-0":
            raise DecodeError(f"Non-canonical integer {raw!r}", start)

        self.pos = end + 1
        return int(raw)

    def _decode_bytes(self) -> bytes:
        start = self.pos
        colon = self.data.find(b":", start)
        if colon == -1:
            raise DecodeError("Missing ':' in string length", start)

        raw_len = self.data[start:colon]
        if any(c not in _DIGITS for c in raw_len):
            raise DecodeError(f"Invalid string length {raw_len!r}", start)
        length = int(raw_len)

        begin = colon + 1
        end = begin + length
        if end > len(self.data):
            raise DecodeError(f"String of length {length} is truncated", start)

        self.pos = end
        return self.data[begin:end]

    def _decode_list(self) -> list:
        self.pos += 1
        items = []
        while self._peek() != ord("e"):
            items.append(self.decode_value())
        self.pos += 1
        return items

    def _decode_dict(self) -> dict:
        self.pos += 1
        result = {}
        while self._peek() != ord("e"):
            if self._peek() not in _DIGITS:
                raise DecodeError("Dictionary key is not a byte string", self.pos)
            key = self._decode_bytes()
            result[key] = self.decode_value()
        self.pos += 1
        return result


def decode(data: bytes) -> BencodeValue:
    """
    Decode a complete bencoded value.

    Raises:
        DecodeError: if the input is malformed, truncated, or has
            trailing bytes after the top-level value
    """
    decoder = _Decoder(bytes(data))
    try:
        value = decoder.decode_value()
    except RecursionError:
        raise DecodeError("Nesting too deep", decoder.pos) from None
    if decoder.pos != len(decoder.data):
        raise DecodeError("Trailing data after top-level value", decoder.pos)
    return value


def encode(value) -> bytes:
    """
    Encode a value canonically.

    Dictionary keys are emitted in lexicographic byte order whatever the
    input order. ``str`` values and keys are encoded as UTF-8.
    """
    parts: List[bytes] = []
    _encode_into(value, parts)
    return b"".join(parts)


def _encode_into(value, parts: List[bytes]) -> None:
    if isinstance(value, bool):
        raise TypeError("Booleans have no bencode representation")
    if isinstance(value, int):
        parts.append(b"i%de" % value)
    elif isinstance(value, (bytes, bytearray)):
        parts.append(b"%d:" % len(value))
        parts.append(bytes(value))
    elif isinstance(value, str):
        _encode_into(value.encode("utf-8"), parts)
    elif isinstance(value, (list, tuple)):
        parts.append(b"l")
        for item in value:
            _encode_into(item, parts)
        parts.append(b"e")
    elif isinstance(value, dict):
        items = []
        for key, item in value.items():
            if isinstance(key, str):
                key = key.encode("utf-8")
            elif not isinstance(key, (bytes, bytearray)):
                raise TypeError(f"Dictionary key must be bytes or str, got {type(key).__name__}")
            items.append((bytes(key), item))
        items.sort(key=lambda kv: kv[0])

        parts.append(b"d")
        for key, item in items:
            _encode_into(key, parts)
            _encode_into(item, parts)
        parts.append(b"e")
    else:
        raise TypeError(f"Cannot bencode {type(value).__name__}")


def _info_dict(torrent_data: bytes) -> Optional[dict]:
    try:
        decoded = decode(torrent_data)
    except DecodeError as e:
        logger.debug(f"Unparseable torrent metadata: {e}")
        return None
    if not isinstance(decoded, dict):
        return None
    info = decoded.get(b"info")
    if not isinstance(info, dict):
        return None
    return info


def info_hash(torrent_data: bytes) -> Optional[str]:
    """
    Compute the v1 info-hash (lowercase hex SHA-1 of the canonical info dict).

    Returns None when the data is not a torrent this codec can interpret.
    """
    info = _info_dict(torrent_data)
    if info is None:
        return None
    return hashlib.sha1(encode(info)).hexdigest()


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def extract_file_list(torrent_data: bytes) -> Optional[List[FileInfo]]:
    """
    Extract (name, size) for every file in a torrent.

    Multi-file torrents use the last segment of each file's path as its
    name. Returns None when the metadata cannot be interpreted.
    """
    info = _info_dict(torrent_data)
    if info is None:
        return None

    files: List[FileInfo] = []
    entries = info.get(b"files")

    if isinstance(entries, list):
        for entry in entries:
            if not isinstance(entry, dict):
                return None
            length = entry.get(b"length")
            if not isinstance(length, int):
                return None
            path = entry.get(b"path") or []
            name = _text(path[-1]) if isinstance(path, list) and path else ""
            files.append(FileInfo(name=name, size=length))
    elif b"name" in info and isinstance(info.get(b"length"), int):
        files.append(FileInfo(name=_text(info[b"name"]), size=info[b"length"]))

    return files
