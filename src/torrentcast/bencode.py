"""
Bencode encoding and decoding for .torrent files.
"""

from __future__ import annotations

from typing import Any


class BencodeError(ValueError):
    """Exception raised for malformed bencoded data."""

    pass


def bencode(value: Any) -> bytes:
    """
    Encode a Python value to bencode format.

    Dictionary keys may be ``str`` or ``bytes``; they are written in sorted
    byte order as the format requires.

    Args:
        value: int, bytes, str, list or dict to encode

    Returns:
        Bencoded bytes
    """
    if isinstance(value, bool):
        raise BencodeError("Cannot encode booleans")
    if isinstance(value, int):
        return f"i{value}e".encode()
    elif isinstance(value, bytes):
        return f"{len(value)}:".encode() + value
    elif isinstance(value, str):
        return bencode(value.encode("utf-8"))
    elif isinstance(value, (list, tuple)):
        return b"l" + b"".join(bencode(item) for item in value) + b"e"
    elif isinstance(value, dict):
        items = []
        for key, item in value.items():
            raw_key = key.encode("utf-8") if isinstance(key, str) else key
            if not isinstance(raw_key, bytes):
                raise BencodeError(f"Dictionary keys must be strings, got {type(key)}")
            items.append((raw_key, item))
        items.sort(key=lambda pair: pair[0])
        return b"d" + b"".join(bencode(k) + bencode(v) for k, v in items) + b"e"
    else:
        raise BencodeError(f"Cannot encode type: {type(value)}")


def bdecode(data: bytes) -> Any:
    """
    Decode a complete bencoded document.

    Raises:
        BencodeError: If the data is malformed or has trailing bytes
    """
    value, index = _decode(data, 0)
    if index != len(data):
        raise BencodeError(f"Trailing data at index {index}")
    return value


def _decode(data: bytes, index: int) -> tuple[Any, int]:
    """
    Decode one bencoded value starting at ``index``.

    Returns:
        Tuple of (decoded_value, new_index)
    """
    if index >= len(data):
        raise BencodeError(f"Unexpected end of data at index {index}")

    char = data[index : index + 1]

    # Integer: i<number>e
    if char == b"i":
        end_index = data.find(b"e", index + 1)
        if end_index == -1:
            raise BencodeError(f"Unterminated integer at index {index}")
        try:
            return int(data[index + 1 : end_index]), end_index + 1
        except ValueError as e:
            raise BencodeError(f"Invalid integer at index {index}") from e

    # List: l<elements>e
    elif char == b"l":
        index += 1
        result: list[Any] = []
        while index < len(data) and data[index : index + 1] != b"e":
            value, index = _decode(data, index)
            result.append(value)
        if index >= len(data):
            raise BencodeError(f"Unterminated list at index {index}")
        return result, index + 1

    # Dictionary: d<key-value pairs>e
    elif char == b"d":
        index += 1
        result_dict: dict[str, Any] = {}
        while index < len(data) and data[index : index + 1] != b"e":
            key, index = _decode(data, index)
            if not isinstance(key, bytes):
                raise BencodeError(f"Dictionary key must be a string at index {index}")
            value, index = _decode(data, index)
            result_dict[key.decode("utf-8", errors="replace")] = value
        if index >= len(data):
            raise BencodeError(f"Unterminated dictionary at index {index}")
        return result_dict, index + 1

    # String: <length>:<data>
    elif char.isdigit():
        colon_index = data.find(b":", index)
        if colon_index == -1:
            raise BencodeError(f"No colon found for string at index {index}")
        try:
            length = int(data[index:colon_index])
        except ValueError as e:
            raise BencodeError(f"Invalid string length at index {index}") from e
        start_index = colon_index + 1
        end_index = start_index + length
        if end_index > len(data):
            raise BencodeError(f"String length exceeds data at index {index}")
        return data[start_index:end_index], end_index

    else:
        raise BencodeError(f"Unexpected character '{char.decode('latin-1', errors='replace')}' at index {index}")
