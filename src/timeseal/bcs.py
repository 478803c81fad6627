"""
Minimal BCS (Binary Canonical Serialization) codec.

Covers exactly what authorization proofs need: the unsigned
``TransactionKind::ProgrammableTransaction`` holding Move calls whose
inputs are pure byte vectors and shared or owned object references.

Layout notes:
- integers are little-endian, lengths and enum tags are ULEB128
- strings and vectors are length-prefixed
- object ids and addresses are 32 raw bytes
"""

import struct
from dataclasses import dataclass, field
from typing import List, Tuple, Union

from .errors import MalformedResponse

ADDRESS_LENGTH = 32

# Enum variant indices
TX_KIND_PROGRAMMABLE = 0
CALL_ARG_PURE = 0
CALL_ARG_OBJECT = 1
OBJECT_ARG_IMM_OR_OWNED = 0
OBJECT_ARG_SHARED = 1
COMMAND_MOVE_CALL = 0
ARGUMENT_INPUT = 1


def encode_uleb128(value: int) -> bytes:
    if value < 0:
        raise ValueError("ULEB128 values must be non-negative")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def encode_bytes(data: bytes) -> bytes:
    """Encode ``vector<u8>``."""
    return encode_uleb128(len(data)) + bytes(data)


def encode_str(value: str) -> bytes:
    return encode_bytes(value.encode("utf-8"))


def encode_address(value: str) -> bytes:
    digits = value[2:] if value.startswith("0x") else value
    raw = bytes.fromhex(digits.rjust(ADDRESS_LENGTH * 2, "0"))
    if len(raw) != ADDRESS_LENGTH:
        raise ValueError(f"Address too long: {value}")
    return raw


class BcsReader:
    """Sequential reader over a BCS byte string."""

    def __init__(self, data: bytes):
        self._data = bytes(data)
        self._pos = 0

    def _take(self, n: int) -> bytes:
        if self._pos + n > len(self._data):
            raise MalformedResponse("Truncated BCS data", offset=self._pos, wanted=n)
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def uleb128(self) -> int:
        result, shift = 0, 0
        while True:
            byte = self._take(1)[0]
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7
            if shift > 63:
                raise MalformedResponse("ULEB128 value overflows u64", offset=self._pos)

    def u8(self) -> int:
        return self._take(1)[0]

    def u16(self) -> int:
        return struct.unpack("<H", self._take(2))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self._take(8))[0]

    def boolean(self) -> bool:
        value = self.u8()
        if value not in (0, 1):
            raise MalformedResponse("Invalid BCS bool", value=value)
        return value == 1

    def vector(self) -> bytes:
        return self._take(self.uleb128())

    def string(self) -> str:
        try:
            return self.vector().decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedResponse("BCS string is not UTF-8", offset=self._pos)

    def fixed(self, n: int) -> bytes:
        return self._take(n)

    def remaining(self) -> bytes:
        return self._data[self._pos:]

    def address(self) -> str:
        return "0x" + self._take(ADDRESS_LENGTH).hex()

    def at_end(self) -> bool:
        return self._pos == len(self._data)


# --------- Programmable transaction model ----------

@dataclass(frozen=True)
class PureArg:
    """A pure input; ``value`` is already BCS-encoded."""
    value: bytes

    def to_bcs(self) -> bytes:
        return encode_uleb128(CALL_ARG_PURE) + encode_bytes(self.value)


@dataclass(frozen=True)
class SharedObjectArg:
    object_id: str
    initial_shared_version: int
    mutable: bool = False

    def to_bcs(self) -> bytes:
        return (
            encode_uleb128(CALL_ARG_OBJECT)
            + encode_uleb128(OBJECT_ARG_SHARED)
            + encode_address(self.object_id)
            + struct.pack("<Q", self.initial_shared_version)
            + bytes([1 if self.mutable else 0])
        )


@dataclass(frozen=True)
class OwnedObjectArg:
    object_id: str
    version: int
    digest: bytes

    def to_bcs(self) -> bytes:
        return (
            encode_uleb128(CALL_ARG_OBJECT)
            + encode_uleb128(OBJECT_ARG_IMM_OR_OWNED)
            + encode_address(self.object_id)
            + struct.pack("<Q", self.version)
            + encode_bytes(self.digest)
        )


CallArg = Union[PureArg, SharedObjectArg, OwnedObjectArg]


@dataclass(frozen=True)
class MoveCall:
    """A Move call whose arguments all reference transaction inputs by index."""
    package: str
    module: str
    function: str
    arguments: Tuple[int, ...] = ()

    @property
    def target(self) -> str:
        return f"{self.package}::{self.module}::{self.function}"

    def to_bcs(self) -> bytes:
        out = bytearray(encode_uleb128(COMMAND_MOVE_CALL))
        out += encode_address(self.package)
        out += encode_str(self.module)
        out += encode_str(self.function)
        out += encode_uleb128(0)  # no type arguments
        out += encode_uleb128(len(self.arguments))
        for index in self.arguments:
            out += encode_uleb128(ARGUMENT_INPUT) + struct.pack("<H", index)
        return bytes(out)


@dataclass
class ProgrammableTransaction:
    inputs: List[CallArg] = field(default_factory=list)
    commands: List[MoveCall] = field(default_factory=list)

    def to_bytes(self) -> bytes:
        """Serialize as ``TransactionKind::ProgrammableTransaction``."""
        out = bytearray(encode_uleb128(TX_KIND_PROGRAMMABLE))
        out += encode_uleb128(len(self.inputs))
        for arg in self.inputs:
            out += arg.to_bcs()
        out += encode_uleb128(len(self.commands))
        for command in self.commands:
            out += command.to_bcs()
        return bytes(out)

    @classmethod
    def from_bytes(cls, data: bytes) -> "ProgrammableTransaction":
        """
        Parse transaction-kind bytes.

        Raises:
            MalformedResponse: On truncated data, trailing bytes or unsupported variants
        """
        reader = BcsReader(data)
        kind = reader.uleb128()
        if kind != TX_KIND_PROGRAMMABLE:
            raise MalformedResponse("Unsupported transaction kind", kind=kind)

        inputs: List[CallArg] = []
        for _ in range(reader.uleb128()):
            inputs.append(_read_call_arg(reader))

        commands: List[MoveCall] = []
        for _ in range(reader.uleb128()):
            commands.append(_read_move_call(reader))

        if not reader.at_end():
            raise MalformedResponse("Trailing bytes after transaction")
        return cls(inputs=inputs, commands=commands)


def _read_call_arg(reader: BcsReader) -> CallArg:
    tag = reader.uleb128()
    if tag == CALL_ARG_PURE:
        return PureArg(reader.vector())
    if tag != CALL_ARG_OBJECT:
        raise MalformedResponse("Unsupported call argument", tag=tag)

    object_tag = reader.uleb128()
    if object_tag == OBJECT_ARG_SHARED:
        return SharedObjectArg(reader.address(), reader.u64(), reader.boolean())
    if object_tag == OBJECT_ARG_IMM_OR_OWNED:
        return OwnedObjectArg(reader.address(), reader.u64(), reader.vector())
    raise MalformedResponse("Unsupported object argument", tag=object_tag)


def _read_move_call(reader: BcsReader) -> MoveCall:
    tag = reader.uleb128()
    if tag != COMMAND_MOVE_CALL:
        raise MalformedResponse("Unsupported command", tag=tag)
    package = reader.address()
    module = reader.string()
    function = reader.string()
    if reader.uleb128() != 0:
        raise MalformedResponse("Type arguments are not supported")

    arguments = []
    for _ in range(reader.uleb128()):
        arg_tag = reader.uleb128()
        if arg_tag != ARGUMENT_INPUT:
            raise MalformedResponse("Only input arguments are supported", tag=arg_tag)
        arguments.append(reader.u16())
    return MoveCall(package, module, function, tuple(arguments))
