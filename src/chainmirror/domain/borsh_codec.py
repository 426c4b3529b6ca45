from __future__ import annotations

import struct
from collections.abc import Mapping, Sequence
from typing import Any, Union

from solders.pubkey import Pubkey

from chainmirror.domain.events import DecodeError

PUBKEY_LENGTH = 32

# A field type is either a primitive name or a tagged tuple:
# ("array", n), ("option", inner), ("trailing", inner), ("vec", inner),
# ("struct", fields). A trailing field is read only when bytes remain.
FieldType = Union[str, tuple[Any, ...]]
FieldSpec = tuple[str, FieldType]

_FIXED_INTS: dict[str, struct.Struct] = {
    "u8": struct.Struct("<B"),
    "i8": struct.Struct("<b"),
    "u16": struct.Struct("<H"),
    "i16": struct.Struct("<h"),
    "u32": struct.Struct("<I"),
    "i32": struct.Struct("<i"),
    "u64": struct.Struct("<Q"),
    "i64": struct.Struct("<q"),
}


class BorshReader:
    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = data
        self._offset = offset

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def _take(self, size: int) -> bytes:
        if size < 0 or self.remaining < size:
            raise DecodeError(
                f"buffer underrun: need {size} bytes at offset {self._offset}, have {self.remaining}"
            )
        chunk = self._data[self._offset : self._offset + size]
        self._offset += size
        return chunk

    def read_int(self, kind: str) -> int:
        codec = _FIXED_INTS.get(kind)
        if codec is None:
            raise DecodeError(f"unsupported integer type: {kind}")
        return int(codec.unpack(self._take(codec.size))[0])

    def read_u8(self) -> int:
        return self.read_int("u8")

    def read_u32(self) -> int:
        return self.read_int("u32")

    def read_u64(self) -> int:
        return self.read_int("u64")

    def read_i64(self) -> int:
        return self.read_int("i64")

    def read_bool(self) -> bool:
        value = self.read_u8()
        if value not in (0, 1):
            raise DecodeError(f"invalid bool byte {value} at offset {self._offset - 1}")
        return value == 1

    def read_bytes(self, size: int) -> bytes:
        return self._take(size)

    def read_pubkey(self) -> str:
        return str(Pubkey(self._take(PUBKEY_LENGTH)))

    def read_string(self) -> str:
        length = self.read_u32()
        raw = self._take(length)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"invalid utf-8 string of length {length}") from exc

    def read(self, field_type: FieldType) -> Any:
        if isinstance(field_type, str):
            if field_type in _FIXED_INTS:
                return self.read_int(field_type)
            if field_type == "bool":
                return self.read_bool()
            if field_type == "pubkey":
                return self.read_pubkey()
            if field_type == "string":
                return self.read_string()
            raise DecodeError(f"unsupported field type: {field_type}")

        tag = field_type[0]
        if tag == "array":
            return self.read_bytes(int(field_type[1])).hex()
        if tag == "option":
            present = self.read_u8()
            if present == 0:
                return None
            if present != 1:
                raise DecodeError(f"invalid option tag {present}")
            return self.read(field_type[1])
        if tag == "trailing":
            if self.remaining == 0:
                return None
            return self.read(field_type[1])
        if tag == "vec":
            length = self.read_u32()
            return [self.read(field_type[1]) for _ in range(length)]
        if tag == "struct":
            return self.read_struct(field_type[1])
        raise DecodeError(f"unsupported field type: {field_type!r}")

    def read_struct(self, fields: Sequence[FieldSpec]) -> dict[str, Any]:
        return {name: self.read(field_type) for name, field_type in fields}


def encode_value(field_type: FieldType, value: Any) -> bytes:
    """Serialize ``value`` with the same layout :class:`BorshReader` reads."""
    if isinstance(field_type, str):
        codec = _FIXED_INTS.get(field_type)
        if codec is not None:
            return codec.pack(int(value))
        if field_type == "bool":
            return b"\x01" if value else b"\x00"
        if field_type == "pubkey":
            return bytes(Pubkey.from_string(value) if isinstance(value, str) else value)
        if field_type == "string":
            raw = str(value).encode("utf-8")
            return _FIXED_INTS["u32"].pack(len(raw)) + raw
        raise ValueError(f"unsupported field type: {field_type}")

    tag = field_type[0]
    if tag == "array":
        raw = bytes.fromhex(value) if isinstance(value, str) else bytes(value)
        if len(raw) != int(field_type[1]):
            raise ValueError(f"array length mismatch: expected {field_type[1]}, got {len(raw)}")
        return raw
    if tag == "option":
        if value is None:
            return b"\x00"
        return b"\x01" + encode_value(field_type[1], value)
    if tag == "trailing":
        return b"" if value is None else encode_value(field_type[1], value)
    if tag == "vec":
        items = list(value)
        return _FIXED_INTS["u32"].pack(len(items)) + b"".join(
            encode_value(field_type[1], item) for item in items
        )
    if tag == "struct":
        return encode_struct(field_type[1], value)
    raise ValueError(f"unsupported field type: {field_type!r}")


def encode_struct(fields: Sequence[FieldSpec], values: Mapping[str, Any]) -> bytes:
    return b"".join(encode_value(field_type, values.get(name)) for name, field_type in fields)
