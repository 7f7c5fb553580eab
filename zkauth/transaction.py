# zkauth/transaction.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Minimal BCS walker for Sui `TransactionData`, used to set the sender of
# pending transaction bytes before they are signed.
#
#   TransactionData::V1 {
#       kind:       TransactionKind::ProgrammableTransaction { inputs, commands }
#       sender:     address (32)
#       gas_data:   { payment: vec<ObjectRef>, owner: address, price: u64, budget: u64 }
#       expiration: None | Epoch(u64)
#   }
#
# The kind has no fixed size, so it is walked field by field to find where
# the sender starts. Only the 32 sender bytes are replaced; everything else is
# copied through untouched (the gas owner included). Anything this walker does
# not understand raises ValueError instead of guessing an offset.
#
# Encoding rules: enum tags and lengths are ULEB128, integers little endian.
# -----------------------------------------------------------------------------

from typing import Callable

ADDRESS_LENGTH = 32

_TX_DATA_V1 = 0
_KIND_PROGRAMMABLE = 0

# TypeTag variants
_TYPE_VECTOR = 6
_TYPE_STRUCT = 7
_PRIMITIVE_TYPES = {0, 1, 2, 3, 4, 5, 8, 9, 10}


class _BcsReader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def take(self, n: int) -> bytes:
        end = self.pos + n
        if end > len(self.data):
            raise ValueError(f"transaction bytes truncated at offset {self.pos}")
        out = self.data[self.pos:end]
        self.pos = end
        return out

    def uleb128(self) -> int:
        value = 0
        for shift in range(0, 64, 7):
            byte = self.take(1)[0]
            value |= (byte & 0x7F) << shift
            if not byte & 0x80:
                return value
        raise ValueError("ULEB128 value too long")

    def skip_bytes(self) -> None:
        self.take(self.uleb128())

    def skip_vector(self, item: Callable[[], None]) -> None:
        for _ in range(self.uleb128()):
            item()

    def at_end(self) -> bool:
        return self.pos == len(self.data)


def _skip_object_ref(r: _BcsReader) -> None:
    r.take(ADDRESS_LENGTH)  # object id
    r.take(8)  # version
    r.skip_bytes()  # digest


def _skip_call_arg(r: _BcsReader) -> None:
    tag = r.uleb128()
    if tag == 0:  # Pure
        r.skip_bytes()
        return
    if tag != 1:
        raise ValueError(f"unsupported call argument variant {tag}")

    obj = r.uleb128()
    if obj in (0, 2):  # ImmOrOwnedObject, Receiving
        _skip_object_ref(r)
    elif obj == 1:  # SharedObject
        r.take(ADDRESS_LENGTH + 8 + 1)
    else:
        raise ValueError(f"unsupported object argument variant {obj}")


def _skip_type_tag(r: _BcsReader) -> None:
    tag = r.uleb128()
    if tag in _PRIMITIVE_TYPES:
        return
    if tag == _TYPE_VECTOR:
        _skip_type_tag(r)
    elif tag == _TYPE_STRUCT:
        r.take(ADDRESS_LENGTH)
        r.skip_bytes()  # module
        r.skip_bytes()  # name
        r.skip_vector(lambda: _skip_type_tag(r))
    else:
        raise ValueError(f"unsupported type tag variant {tag}")


def _skip_argument(r: _BcsReader) -> None:
    tag = r.uleb128()
    if tag == 0:  # GasCoin
        return
    if tag in (1, 2):  # Input, Result
        r.take(2)
    elif tag == 3:  # NestedResult
        r.take(4)
    else:
        raise ValueError(f"unsupported argument variant {tag}")


def _skip_arguments(r: _BcsReader) -> None:
    r.skip_vector(lambda: _skip_argument(r))


def _skip_command(r: _BcsReader) -> None:
    tag = r.uleb128()

    if tag == 0:  # MoveCall
        r.take(ADDRESS_LENGTH)
        r.skip_bytes()  # module
        r.skip_bytes()  # function
        r.skip_vector(lambda: _skip_type_tag(r))
        _skip_arguments(r)
    elif tag == 1:  # TransferObjects
        _skip_arguments(r)
        _skip_argument(r)
    elif tag in (2, 3):  # SplitCoins, MergeCoins
        _skip_argument(r)
        _skip_arguments(r)
    elif tag == 4:  # Publish
        r.skip_vector(r.skip_bytes)  # modules
        r.skip_vector(lambda: r.take(ADDRESS_LENGTH))  # dependencies
    elif tag == 5:  # MakeMoveVec
        if r.uleb128():
            _skip_type_tag(r)
        _skip_arguments(r)
    elif tag == 6:  # Upgrade
        r.skip_vector(r.skip_bytes)  # modules
        r.skip_vector(lambda: r.take(ADDRESS_LENGTH))  # dependencies
        r.take(ADDRESS_LENGTH)
        _skip_argument(r)
    else:
        raise ValueError(f"unsupported command variant {tag}")


def _sender_offset(tx_bytes: bytes) -> int:
    """Walk the whole TransactionData and return where the sender starts."""
    r = _BcsReader(tx_bytes)

    version = r.uleb128()
    if version != _TX_DATA_V1:
        raise ValueError(f"unsupported TransactionData version {version}")
    kind = r.uleb128()
    if kind != _KIND_PROGRAMMABLE:
        raise ValueError(f"only programmable transactions can be signed, got kind {kind}")

    r.skip_vector(lambda: _skip_call_arg(r))
    r.skip_vector(lambda: _skip_command(r))

    offset = r.pos
    r.take(ADDRESS_LENGTH)

    r.skip_vector(lambda: _skip_object_ref(r))  # gas payment
    r.take(ADDRESS_LENGTH + 8 + 8)  # gas owner, price, budget

    expiration = r.uleb128()
    if expiration == 1:
        r.take(8)
    elif expiration != 0:
        raise ValueError(f"unsupported expiration variant {expiration}")

    if not r.at_end():
        raise ValueError(f"{len(tx_bytes) - r.pos} trailing bytes after TransactionData")
    return offset


def address_bytes(address: str) -> bytes:
    hex_part = str(address).strip().lower().removeprefix("0x")
    if not hex_part or len(hex_part) > ADDRESS_LENGTH * 2:
        raise ValueError(f"not a chain address: {address!r}")
    return bytes.fromhex(hex_part.rjust(ADDRESS_LENGTH * 2, "0"))


def get_sender(tx_bytes: bytes) -> str:
    offset = _sender_offset(tx_bytes)
    return "0x" + tx_bytes[offset:offset + ADDRESS_LENGTH].hex()


def set_sender(tx_bytes: bytes, sender: str) -> bytes:
    """
    Return `tx_bytes` with the TransactionData sender replaced by `sender`.

    Works whether the sender was unset (all zeros) or named someone else.
    Raises ValueError for bytes that are not a V1 programmable transaction.
    """
    raw_sender = address_bytes(sender)
    offset = _sender_offset(tx_bytes)
    return tx_bytes[:offset] + raw_sender + tx_bytes[offset + ADDRESS_LENGTH:]
