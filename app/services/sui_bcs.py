# app/services/sui_bcs.py
"""
Minimal BCS codec for Sui ``TransactionData``.

The gateway never builds transactions for requesters, but before co-signing
it has to know which gas coin (and which version of it) a signed
transaction pays with. Only the V1 layout of programmable transactions is
understood:

    TransactionData::V1 {
        kind: TransactionKind::ProgrammableTransaction { inputs, commands },
        sender: address,
        gas_data: GasData { payment: vector<ObjectRef>, owner: address, price: u64, budget: u64 },
        expiration: TransactionExpiration,
    }

The transaction kind is walked only to find where it ends. Its bytes are
kept verbatim and never re-encoded.
"""
import struct
from dataclasses import dataclass, field
from typing import Callable, List, Optional, TypeVar

T = TypeVar("T")

ADDRESS_LENGTH = 32
DIGEST_LENGTH = 32
MAX_TYPE_DEPTH = 16

TRANSACTION_DATA_V1 = 0
PROGRAMMABLE_TRANSACTION = 0


class BcsError(ValueError):
    """Bytes that do not decode as the expected BCS layout."""


def address_to_bytes(address: str) -> bytes:
    """Decode a 0x-prefixed Sui address, left-padding short forms to 32 bytes."""
    hex_part = address[2:] if address[:2] in ("0x", "0X") else address
    if not hex_part or len(hex_part) > ADDRESS_LENGTH * 2:
        raise BcsError(f"Not a Sui address: {address!r}")
    try:
        return bytes.fromhex(hex_part.rjust(ADDRESS_LENGTH * 2, "0"))
    except ValueError as e:
        raise BcsError(f"Not a Sui address: {address!r}") from e


def same_address(left: str, right: str) -> bool:
    try:
        return address_to_bytes(left) == address_to_bytes(right)
    except BcsError:
        return False


class BcsReader:
    """Sequential reader over BCS bytes."""

    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0

    @property
    def position(self) -> int:
        return self._pos

    def read_bytes(self, length: int) -> bytes:
        end = self._pos + length
        if length < 0 or end > len(self._data):
            raise BcsError(f"Unexpected end of input at offset {self._pos} (wanted {length} bytes)")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def read_rest(self) -> bytes:
        return self.read_bytes(len(self._data) - self._pos)

    def read_u8(self) -> int:
        return self.read_bytes(1)[0]

    def read_u16(self) -> int:
        return struct.unpack("<H", self.read_bytes(2))[0]

    def read_u64(self) -> int:
        return struct.unpack("<Q", self.read_bytes(8))[0]

    def read_bool(self) -> bool:
        value = self.read_u8()
        if value > 1:
            raise BcsError(f"Invalid bool byte {value} at offset {self._pos - 1}")
        return value == 1

    def read_uleb128(self) -> int:
        """Read a length or enum tag (ULEB128, at most u32)."""
        result = 0
        shift = 0
        while True:
            byte = self.read_u8()
            result |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return result
            shift += 7
            if shift > 28:
                raise BcsError("ULEB128 value does not fit in u32")

    def read_byte_vector(self) -> bytes:
        return self.read_bytes(self.read_uleb128())

    def read_address(self) -> str:
        return "0x" + self.read_bytes(ADDRESS_LENGTH).hex()

    def read_vector(self, read_item: Callable[["BcsReader"], T]) -> List[T]:
        return [read_item(self) for _ in range(self.read_uleb128())]


class BcsWriter:
    """Append-only BCS encoder. Methods return the writer so calls chain."""

    def __init__(self):
        self._buf = bytearray()

    def write_bytes(self, data: bytes) -> "BcsWriter":
        self._buf += data
        return self

    def write_u8(self, value: int) -> "BcsWriter":
        self._buf.append(value)
        return self

    def write_u16(self, value: int) -> "BcsWriter":
        return self.write_bytes(struct.pack("<H", value))

    def write_u64(self, value: int) -> "BcsWriter":
        return self.write_bytes(struct.pack("<Q", value))

    def write_uleb128(self, value: int) -> "BcsWriter":
        while True:
            byte = value & 0x7F
            value >>= 7
            if value:
                self._buf.append(byte | 0x80)
            else:
                self._buf.append(byte)
                return self

    def write_byte_vector(self, data: bytes) -> "BcsWriter":
        return self.write_uleb128(len(data)).write_bytes(data)

    def write_str(self, value: str) -> "BcsWriter":
        return self.write_byte_vector(value.encode("utf-8"))

    def write_address(self, address: str) -> "BcsWriter":
        return self.write_bytes(address_to_bytes(address))

    def to_bytes(self) -> bytes:
        return bytes(self._buf)


@dataclass(frozen=True)
class ObjectRef:
    """(object id, version, digest) triple naming one version of an owned object."""
    object_id: str
    version: int
    digest: bytes

    @classmethod
    def read(cls, reader: BcsReader) -> "ObjectRef":
        object_id = reader.read_address()
        version = reader.read_u64()
        digest = reader.read_byte_vector()
        if len(digest) != DIGEST_LENGTH:
            raise BcsError(f"Object digest must be {DIGEST_LENGTH} bytes, got {len(digest)}")
        return cls(object_id=object_id, version=version, digest=digest)

    def write(self, writer: BcsWriter) -> BcsWriter:
        return writer.write_address(self.object_id).write_u64(self.version).write_byte_vector(self.digest)


@dataclass(frozen=True)
class GasData:
    payment: List[ObjectRef] = field(default_factory=list)
    owner: str = ""
    price: int = 0
    budget: int = 0

    @classmethod
    def read(cls, reader: BcsReader) -> "GasData":
        return cls(
            payment=reader.read_vector(ObjectRef.read),
            owner=reader.read_address(),
            price=reader.read_u64(),
            budget=reader.read_u64(),
        )

    def write(self, writer: BcsWriter) -> BcsWriter:
        writer.write_uleb128(len(self.payment))
        for ref in self.payment:
            ref.write(writer)
        return writer.write_address(self.owner).write_u64(self.price).write_u64(self.budget)

    def find(self, object_id: str) -> Optional[ObjectRef]:
        """The payment reference for ``object_id``, if the transaction pays with it."""
        for ref in self.payment:
            if same_address(ref.object_id, object_id):
                return ref
        return None


def _skip_type_tag(reader: BcsReader, depth: int = 0) -> None:
    if depth > MAX_TYPE_DEPTH:
        raise BcsError("Type tag nested too deeply")

    tag = reader.read_uleb128()
    if tag in (0, 1, 2, 3, 4, 5, 8, 9, 10):
        # bool, u8, u64, u128, address, signer, u16, u32, u256
        return
    if tag == 6:
        _skip_type_tag(reader, depth + 1)
        return
    if tag == 7:
        reader.read_address()
        reader.read_byte_vector()
        reader.read_byte_vector()
        for _ in range(reader.read_uleb128()):
            _skip_type_tag(reader, depth + 1)
        return
    raise BcsError(f"Unknown type tag variant {tag}")


def _skip_argument(reader: BcsReader) -> None:
    variant = reader.read_uleb128()
    if variant == 0:  # GasCoin
        return
    if variant in (1, 2):  # Input, Result
        reader.read_u16()
        return
    if variant == 3:  # NestedResult
        reader.read_u16()
        reader.read_u16()
        return
    raise BcsError(f"Unknown argument variant {variant}")


def _skip_arguments(reader: BcsReader) -> None:
    for _ in range(reader.read_uleb128()):
        _skip_argument(reader)


def _skip_call_arg(reader: BcsReader) -> None:
    variant = reader.read_uleb128()
    if variant == 0:  # Pure
        reader.read_byte_vector()
        return
    if variant != 1:
        raise BcsError(f"Unsupported call argument variant {variant}")

    object_arg = reader.read_uleb128()
    if object_arg in (0, 2):  # ImmOrOwnedObject, Receiving
        ObjectRef.read(reader)
    elif object_arg == 1:  # SharedObject
        reader.read_address()
        reader.read_u64()
        reader.read_bool()
    else:
        raise BcsError(f"Unknown object argument variant {object_arg}")


def _skip_command(reader: BcsReader) -> None:
    variant = reader.read_uleb128()
    if variant == 0:  # MoveCall
        reader.read_address()
        reader.read_byte_vector()
        reader.read_byte_vector()
        for _ in range(reader.read_uleb128()):
            _skip_type_tag(reader)
        _skip_arguments(reader)
    elif variant == 1:  # TransferObjects
        _skip_arguments(reader)
        _skip_argument(reader)
    elif variant in (2, 3):  # SplitCoins, MergeCoins
        _skip_argument(reader)
        _skip_arguments(reader)
    elif variant == 4:  # Publish
        reader.read_vector(BcsReader.read_byte_vector)
        reader.read_vector(BcsReader.read_address)
    elif variant == 5:  # MakeMoveVec
        if reader.read_bool():
            _skip_type_tag(reader)
        _skip_arguments(reader)
    elif variant == 6:  # Upgrade
        reader.read_vector(BcsReader.read_byte_vector)
        reader.read_vector(BcsReader.read_address)
        reader.read_address()
        _skip_argument(reader)
    else:
        raise BcsError(f"Unknown command variant {variant}")


def _skip_transaction_kind(reader: BcsReader) -> None:
    kind = reader.read_uleb128()
    if kind != PROGRAMMABLE_TRANSACTION:
        raise BcsError(f"Only programmable transactions are accepted, got kind {kind}")
    for _ in range(reader.read_uleb128()):
        _skip_call_arg(reader)
    for _ in range(reader.read_uleb128()):
        _skip_command(reader)


@dataclass(frozen=True)
class TransactionData:
    kind: bytes
    sender: str
    gas_data: GasData
    expiration: bytes = b"\x00"

    @classmethod
    def from_bytes(cls, raw: bytes) -> "TransactionData":
        """
        Decode signed transaction bytes.

        Raises:
            BcsError: If the bytes are not a V1 programmable TransactionData
        """
        reader = BcsReader(raw)
        version = reader.read_uleb128()
        if version != TRANSACTION_DATA_V1:
            raise BcsError(f"Unsupported TransactionData version {version}")

        start = reader.position
        _skip_transaction_kind(reader)
        kind = raw[start:reader.position]

        sender = reader.read_address()
        gas_data = GasData.read(reader)
        expiration = reader.read_rest()
        if not expiration:
            raise BcsError("Missing transaction expiration")

        return cls(kind=kind, sender=sender, gas_data=gas_data, expiration=expiration)

    def to_bytes(self) -> bytes:
        writer = BcsWriter().write_uleb128(TRANSACTION_DATA_V1).write_bytes(self.kind)
        writer.write_address(self.sender)
        self.gas_data.write(writer)
        return writer.write_bytes(self.expiration).to_bytes()
