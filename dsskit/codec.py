"""Protocol Buffers wire encoding for dataclass-based messages.

A message is a dataclass deriving from :class:`Message` whose fields are
declared with :func:`proto_field`. Encoding follows proto3 rules: scalar
fields equal to their default are omitted, repeated numeric fields are
packed, and decoding accepts both packed and unpacked forms and skips
unknown fields.
"""

from __future__ import annotations

import dataclasses
import enum
import functools
from typing import Any, TypeVar

__all__ = [
    "FieldKind",
    "WireType",
    "EncodeError",
    "DecodeError",
    "Message",
    "proto_field",
    "encode",
    "decode",
    "MAX_TAG",
]

MAX_TAG = (1 << 29) - 1
_META_KEY = "dsskit.proto"
_MASK32 = (1 << 32) - 1
_MASK64 = (1 << 64) - 1
_RECURSION_LIMIT = 100
_MAX_VARINT_BYTES = 10


class WireType(enum.IntEnum):
    """Wire types of the Protocol Buffers format."""

    VARINT = 0
    FIXED64 = 1
    LENGTH_DELIMITED = 2
    START_GROUP = 3
    END_GROUP = 4
    FIXED32 = 5


class FieldKind(enum.Enum):
    """Scalar types a message field may hold."""

    INT32 = "int32"
    INT64 = "int64"
    UINT32 = "uint32"
    UINT64 = "uint64"
    BOOL = "bool"
    ENUM = "enum"
    STRING = "string"
    BYTES = "bytes"

    @property
    def wire_type(self) -> WireType:
        if self in (FieldKind.STRING, FieldKind.BYTES):
            return WireType.LENGTH_DELIMITED
        return WireType.VARINT

    @property
    def default(self) -> Any:
        if self is FieldKind.STRING:
            return ""
        if self is FieldKind.BYTES:
            return b""
        if self is FieldKind.BOOL:
            return False
        return 0


_INT_RANGES = {
    FieldKind.INT32: (-(1 << 31), (1 << 31) - 1),
    FieldKind.ENUM: (-(1 << 31), (1 << 31) - 1),
    FieldKind.INT64: (-(1 << 63), (1 << 63) - 1),
    FieldKind.UINT32: (0, _MASK32),
    FieldKind.UINT64: (0, _MASK64),
}


class EncodeError(Exception):
    """A message could not be encoded."""

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EncodeError):
            return NotImplemented
        return type(self) is type(other) and self.args == other.args

    def __hash__(self) -> int:
        return hash((type(self), self.args))


class DecodeError(Exception):
    """A buffer could not be decoded into a message."""

    def __init__(self, description: str, stack: tuple[tuple[str, str], ...] = ()):
        super().__init__(description, tuple(stack))
        self.description = description
        self.stack = tuple(stack)

    def push(self, message: str, field: str) -> DecodeError:
        """Return a copy of this error with one more level of field context."""
        return DecodeError(self.description, self.stack + ((message, field),))

    def __str__(self) -> str:
        path = "".join(f"{message}.{field}: " for message, field in self.stack)
        return f"failed to decode Protobuf message: {path}{self.description}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DecodeError):
            return NotImplemented
        return type(self) is type(other) and self.args == other.args

    def __hash__(self) -> int:
        return hash((type(self), self.args))


@dataclasses.dataclass(frozen=True)
class _FieldSpec:
    name: str
    tag: int
    kind: FieldKind
    repeated: bool


def proto_field(tag: int, kind: FieldKind, repeated: bool = False) -> Any:
    """Declare a dataclass field carried on the wire under ``tag``."""
    if not isinstance(tag, int) or not 1 <= tag <= MAX_TAG:
        raise ValueError(f"invalid tag value: {tag}")
    kind = FieldKind(kind)
    metadata = {_META_KEY: (tag, kind, repeated)}
    if repeated:
        return dataclasses.field(default_factory=list, metadata=metadata)
    return dataclasses.field(default=kind.default, metadata=metadata)


@functools.lru_cache(maxsize=None)
def _field_specs(cls: type) -> tuple[_FieldSpec, ...]:
    if not dataclasses.is_dataclass(cls):
        raise TypeError(f"{cls.__name__} must be a dataclass")
    specs = []
    seen: dict[int, str] = {}
    for field in dataclasses.fields(cls):
        meta = field.metadata.get(_META_KEY)
        if meta is None:
            continue
        tag, kind, repeated = meta
        if tag in seen:
            raise TypeError(
                f"{cls.__name__}: tag {tag} used by both {seen[tag]} and {field.name}"
            )
        seen[tag] = field.name
        specs.append(_FieldSpec(field.name, tag, kind, repeated))
    return tuple(sorted(specs, key=lambda spec: spec.tag))


# ---------------------------------------------------------------- encoding


def _write_varint(out: bytearray, value: int) -> None:
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)


def _write_key(out: bytearray, tag: int, wire_type: WireType) -> None:
    _write_varint(out, (tag << 3) | wire_type)


def _check_value(kind: FieldKind, value: Any, where: str) -> None:
    if kind is FieldKind.STRING:
        if not isinstance(value, str):
            raise EncodeError(f"{where}: expected str, got {type(value).__name__}")
    elif kind is FieldKind.BYTES:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise EncodeError(f"{where}: expected bytes, got {type(value).__name__}")
    elif kind is FieldKind.BOOL:
        if not isinstance(value, bool):
            raise EncodeError(f"{where}: expected bool, got {type(value).__name__}")
    else:
        if not isinstance(value, int):
            raise EncodeError(f"{where}: expected int, got {type(value).__name__}")
        low, high = _INT_RANGES[kind]
        if not low <= value <= high:
            raise EncodeError(f"{where}: {value} out of range for {kind.value}")


def _length_delimited_payload(kind: FieldKind, value: Any, where: str) -> bytes:
    if kind is FieldKind.STRING:
        try:
            return value.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise EncodeError(f"{where}: string is not encodable as UTF-8") from exc
    return bytes(value)


def _varint_of(kind: FieldKind, value: Any) -> int:
    if kind is FieldKind.BOOL:
        return int(value)
    return int(value) & _MASK64


def _encode_field(out: bytearray, spec: _FieldSpec, value: Any, where: str) -> None:
    kind = spec.kind
    if spec.repeated:
        if not isinstance(value, (list, tuple)):
            raise EncodeError(f"{where}: expected a list, got {type(value).__name__}")
        for item in value:
            _check_value(kind, item, where)
        if kind.wire_type is WireType.LENGTH_DELIMITED:
            for item in value:
                payload = _length_delimited_payload(kind, item, where)
                _write_key(out, spec.tag, WireType.LENGTH_DELIMITED)
                _write_varint(out, len(payload))
                out += payload
        elif value:
            packed = bytearray()
            for item in value:
                _write_varint(packed, _varint_of(kind, item))
            _write_key(out, spec.tag, WireType.LENGTH_DELIMITED)
            _write_varint(out, len(packed))
            out += packed
        return

    _check_value(kind, value, where)
    if value == kind.default:
        return
    if kind.wire_type is WireType.LENGTH_DELIMITED:
        payload = _length_delimited_payload(kind, value, where)
        _write_key(out, spec.tag, WireType.LENGTH_DELIMITED)
        _write_varint(out, len(payload))
        out += payload
    else:
        _write_key(out, spec.tag, WireType.VARINT)
        _write_varint(out, _varint_of(kind, value))


# ---------------------------------------------------------------- decoding


class _Reader:
    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0

    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def read_varint(self) -> int:
        result = 0
        for index in range(_MAX_VARINT_BYTES):
            if self._pos >= len(self._data):
                raise DecodeError("invalid varint")
            byte = self._data[self._pos]
            self._pos += 1
            if index == _MAX_VARINT_BYTES - 1 and byte > 1:
                raise DecodeError("invalid varint")
            result |= (byte & 0x7F) << (7 * index)
            if byte < 0x80:
                return result
        raise DecodeError("invalid varint")

    def read_key(self) -> tuple[int, WireType]:
        key = self.read_varint()
        if key > _MASK32:
            raise DecodeError(f"invalid key value: {key}")
        wire = key & 0x7
        if wire > WireType.FIXED32:
            raise DecodeError(f"invalid wire type value: {wire}")
        tag = key >> 3
        if tag < 1:
            raise DecodeError("invalid tag value: 0")
        return tag, WireType(wire)

    def advance(self, count: int) -> bytes:
        if count > len(self._data) - self._pos:
            raise DecodeError("buffer underflow")
        chunk = self._data[self._pos : self._pos + count]
        self._pos += count
        return chunk

    def read_length_delimited(self) -> bytes:
        return self.advance(self.read_varint())

    def skip_field(self, tag: int, wire: WireType, depth: int = _RECURSION_LIMIT) -> None:
        if depth <= 0:
            raise DecodeError("recursion limit reached")
        if wire is WireType.VARINT:
            self.read_varint()
        elif wire is WireType.FIXED64:
            self.advance(8)
        elif wire is WireType.FIXED32:
            self.advance(4)
        elif wire is WireType.LENGTH_DELIMITED:
            self.read_length_delimited()
        elif wire is WireType.START_GROUP:
            while True:
                inner_tag, inner_wire = self.read_key()
                if inner_wire is WireType.END_GROUP:
                    if inner_tag != tag:
                        raise DecodeError("unexpected end group tag")
                    return
                self.skip_field(inner_tag, inner_wire, depth - 1)
        else:
            raise DecodeError("unexpected end group tag")


def _from_varint(kind: FieldKind, raw: int) -> Any:
    if kind in (FieldKind.INT32, FieldKind.ENUM):
        value = raw & _MASK32
        return value - (1 << 32) if value & (1 << 31) else value
    if kind is FieldKind.INT64:
        return raw - (1 << 64) if raw & (1 << 63) else raw
    if kind is FieldKind.UINT32:
        return raw & _MASK32
    if kind is FieldKind.BOOL:
        return raw != 0
    return raw


def _wire_mismatch(actual: WireType, expected: WireType) -> DecodeError:
    return DecodeError(
        f"invalid wire type: {actual.name} (expected {expected.name})"
    )


def _merge_field(message: Message, spec: _FieldSpec, wire: WireType, reader: _Reader) -> None:
    kind = spec.kind
    if kind.wire_type is WireType.LENGTH_DELIMITED:
        if wire is not WireType.LENGTH_DELIMITED:
            raise _wire_mismatch(wire, WireType.LENGTH_DELIMITED)
        raw = reader.read_length_delimited()
        if kind is FieldKind.STRING:
            try:
                value: Any = raw.decode("utf-8")
            except UnicodeDecodeError:
                raise DecodeError(
                    "invalid string value: data is not UTF-8 encoded"
                ) from None
        else:
            value = bytes(raw)
        if spec.repeated:
            getattr(message, spec.name).append(value)
        else:
            setattr(message, spec.name, value)
        return

    if spec.repeated and wire is WireType.LENGTH_DELIMITED:
        packed = _Reader(reader.read_length_delimited())
        values = getattr(message, spec.name)
        while not packed.at_end():
            values.append(_from_varint(kind, packed.read_varint()))
        return
    if wire is not WireType.VARINT:
        raise _wire_mismatch(wire, WireType.VARINT)
    value = _from_varint(kind, reader.read_varint())
    if spec.repeated:
        getattr(message, spec.name).append(value)
    else:
        setattr(message, spec.name, value)


# ---------------------------------------------------------------- messages

M = TypeVar("M", bound="Message")


class Message:
    """Base class of encodable messages; subclasses must be dataclasses."""

    def encode(self) -> bytes:
        """Encode this message into its wire form."""
        cls = type(self)
        out = bytearray()
        for spec in _field_specs(cls):
            where = f"{cls.__name__}.{spec.name}"
            _encode_field(out, spec, getattr(self, spec.name), where)
        return bytes(out)

    @classmethod
    def decode(cls: type[M], data: bytes) -> M:
        """Decode a message of this type from ``data``."""
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError(f"expected a bytes-like object, got {type(data).__name__}")
        specs = {spec.tag: spec for spec in _field_specs(cls)}
        message = cls()
        reader = _Reader(bytes(data))
        while not reader.at_end():
            tag, wire = reader.read_key()
            spec = specs.get(tag)
            if spec is None:
                reader.skip_field(tag, wire)
                continue
            try:
                _merge_field(message, spec, wire, reader)
            except DecodeError as exc:
                raise exc.push(cls.__name__, spec.name) from None
        return message

    def encoded_len(self) -> int:
        """Number of bytes the encoded message occupies."""
        return len(self.encode())


def encode(message: Message) -> bytes:
    """Encode ``message`` to bytes."""
    if not isinstance(message, Message):
        raise TypeError(f"{type(message).__name__} is not a Message")
    return message.encode()


def decode(message_type: type[M], data: bytes) -> M:
    """Decode a ``message_type`` instance from ``data``."""
    if not (isinstance(message_type, type) and issubclass(message_type, Message)):
        raise TypeError(f"{message_type!r} is not a Message type")
    return message_type.decode(data)