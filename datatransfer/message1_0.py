"""Messages of the legacy 1.0 data transfer protocol, encoded as CBOR tuples."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, BinaryIO, Optional, Union

import cbor2

from datatransfer.core import (
    EMPTY_TYPE_IDENTIFIER,
    PROTOCOL_DATA_TRANSFER_1_0,
    UNDEF_CID,
    ChannelID,
    Cid,
    MessageType,
    TransferID,
    TypeIdentifier,
)

_CID_TAG = 42


class MessageError(Exception):
    """Raised when a message cannot be built, converted, read or decoded."""


def _encode_cid(cid: Optional[Cid]) -> Any:
    if cid is None:
        return None
    return cbor2.CBORTag(_CID_TAG, b"\x00" + cid.raw)


def _decode_cid(value: Any) -> Optional[Cid]:
    if value is None:
        return None
    if not isinstance(value, cbor2.CBORTag) or value.tag != _CID_TAG:
        raise MessageError("expected a CID tag")
    raw = value.value
    if not isinstance(raw, bytes) or not raw or raw[0] != 0:
        raise MessageError("invalid CID encoding")
    return Cid(raw[1:])


def _embed(raw: Optional[bytes]) -> Any:
    """Turn deferred raw CBOR into a value that re-encodes to the same item."""
    if raw is None:
        return None
    try:
        return cbor2.loads(raw)
    except cbor2.CBORDecodeError as err:
        raise MessageError(f"invalid deferred CBOR: {err}") from err


def _defer(value: Any) -> Optional[bytes]:
    if value is None:
        return None
    return cbor2.dumps(value)


def _expect(value: Any, kind: Union[type, tuple], name: str) -> Any:
    if isinstance(value, bool) and kind is int:
        raise MessageError(f"field {name} has wrong type")
    if not isinstance(value, kind):
        raise MessageError(f"field {name} has wrong type")
    return value


def _expect_list(value: Any, length: int, name: str) -> list:
    if not isinstance(value, list) or len(value) != length:
        raise MessageError(f"{name} must be an array of {length} elements")
    return value


@dataclass
class TransferRequest:
    """A request of the 1.0 protocol."""

    bcid: Optional[Cid] = None
    typ: int = 0
    paus: bool = False
    part: bool = False
    pull: bool = False
    stor: Optional[bytes] = None
    vouch: Optional[bytes] = None
    vtyp: TypeIdentifier = EMPTY_TYPE_IDENTIFIER
    xfer_id: int = 0

    def is_request(self) -> bool:
        return True

    def is_new(self) -> bool:
        return self.typ == MessageType.NEW

    def is_update(self) -> bool:
        return self.typ == MessageType.UPDATE

    def is_voucher(self) -> bool:
        return self.typ in (MessageType.VOUCHER, MessageType.NEW)

    def is_paused(self) -> bool:
        return self.paus

    def is_cancel(self) -> bool:
        return self.typ == MessageType.CANCEL

    def is_partial(self) -> bool:
        return self.part

    def is_pull(self) -> bool:
        return self.pull

    def is_restart(self) -> bool:
        return False

    def is_restart_existing_channel_request(self) -> bool:
        return False

    def transfer_id(self) -> TransferID:
        return self.xfer_id

    def voucher_type(self) -> TypeIdentifier:
        return self.vtyp

    def voucher(self, decoder: Any) -> Any:
        """Decode the voucher with the given decoder."""
        if self.vouch is None:
            raise MessageError("No voucher present to read")
        return decoder.decode_from_cbor(self.vouch)

    def empty_voucher(self) -> bool:
        return self.vtyp == EMPTY_TYPE_IDENTIFIER

    def base_cid(self) -> Cid:
        return UNDEF_CID if self.bcid is None else self.bcid

    def selector(self) -> Any:
        """Decode and return the selector node."""
        if self.stor is None:
            raise MessageError("No selector present to read")
        try:
            return cbor2.loads(self.stor)
        except cbor2.CBORDecodeError as err:
            raise MessageError(f"Error decoding selector: {err}") from err

    def restart_channel_id(self) -> ChannelID:
        raise MessageError("not supported")

    def message_for_protocol(self, target_protocol: str) -> "TransferRequest":
        if target_protocol == PROTOCOL_DATA_TRANSFER_1_0:
            return self
        raise MessageError("protocol not supported")

    def to_cbor_value(self) -> list:
        return [
            _encode_cid(self.bcid),
            self.typ,
            self.paus,
            self.part,
            self.pull,
            _embed(self.stor),
            _embed(self.vouch),
            self.vtyp,
            self.xfer_id,
        ]

    @classmethod
    def from_cbor_value(cls, value: Any) -> "TransferRequest":
        fields = _expect_list(value, 9, "transfer request")
        return cls(
            bcid=_decode_cid(fields[0]),
            typ=_expect(fields[1], int, "Type"),
            paus=_expect(fields[2], bool, "Paus"),
            part=_expect(fields[3], bool, "Part"),
            pull=_expect(fields[4], bool, "Pull"),
            stor=_defer(fields[5]),
            vouch=_defer(fields[6]),
            vtyp=_expect(fields[7], str, "VTyp"),
            xfer_id=_expect(fields[8], int, "XferID"),
        )

    def to_net(self, stream: BinaryIO) -> None:
        """Write this request, wrapped in a transfer message, to the stream."""
        stream.write(cbor2.dumps([True, self.to_cbor_value(), None]))


@dataclass
class TransferResponse:
    """A response of the 1.0 protocol."""

    typ: int = 0
    acpt: bool = False
    paus: bool = False
    xfer_id: int = 0
    vres: Optional[bytes] = None
    vtyp: TypeIdentifier = EMPTY_TYPE_IDENTIFIER

    def is_request(self) -> bool:
        return False

    def is_new(self) -> bool:
        return self.typ == MessageType.NEW

    def is_update(self) -> bool:
        return self.typ == MessageType.UPDATE

    def is_paused(self) -> bool:
        return self.paus

    def is_cancel(self) -> bool:
        return self.typ == MessageType.CANCEL

    def is_complete(self) -> bool:
        return self.typ == MessageType.COMPLETE

    def is_restart(self) -> bool:
        return False

    def is_voucher_result(self) -> bool:
        return self.typ in (
            MessageType.VOUCHER_RESULT,
            MessageType.NEW,
            MessageType.COMPLETE,
        )

    def accepted(self) -> bool:
        return self.acpt

    def transfer_id(self) -> TransferID:
        return self.xfer_id

    def voucher_result_type(self) -> TypeIdentifier:
        return self.vtyp

    def voucher_result(self, decoder: Any) -> Any:
        """Decode the voucher result with the given decoder."""
        if self.vres is None:
            raise MessageError("No voucher present to read")
        return decoder.decode_from_cbor(self.vres)

    def empty_voucher_result(self) -> bool:
        return self.vtyp == EMPTY_TYPE_IDENTIFIER

    def message_for_protocol(self, target_protocol: str) -> "TransferResponse":
        if target_protocol == PROTOCOL_DATA_TRANSFER_1_0:
            return self
        raise MessageError("protocol not supported")

    def to_cbor_value(self) -> list:
        return [
            self.typ,
            self.acpt,
            self.paus,
            self.xfer_id,
            _embed(self.vres),
            self.vtyp,
        ]

    @classmethod
    def from_cbor_value(cls, value: Any) -> "TransferResponse":
        fields = _expect_list(value, 6, "transfer response")
        return cls(
            typ=_expect(fields[0], int, "Type"),
            acpt=_expect(fields[1], bool, "Acpt"),
            paus=_expect(fields[2], bool, "Paus"),
            xfer_id=_expect(fields[3], int, "XferID"),
            vres=_defer(fields[4]),
            vtyp=_expect(fields[5], str, "VTyp"),
        )

    def to_net(self, stream: BinaryIO) -> None:
        """Write this response, wrapped in a transfer message, to the stream."""
        stream.write(cbor2.dumps([False, None, self.to_cbor_value()]))


def new_transfer_request(
    bcid: Optional[Cid],
    typ: int,
    paus: bool,
    part: bool,
    pull: bool,
    stor: Optional[bytes],
    vouch: Optional[bytes],
    vtyp: TypeIdentifier,
    xfer_id: int,
) -> TransferRequest:
    """Create a request of the 1.0 protocol."""
    return TransferRequest(
        bcid=bcid,
        typ=typ,
        paus=paus,
        part=part,
        pull=pull,
        stor=stor,
        vouch=vouch,
        vtyp=vtyp,
        xfer_id=xfer_id,
    )


def new_transfer_response(
    typ: int,
    acpt: bool,
    paus: bool,
    xfer_id: int,
    vres: Optional[bytes],
    vtyp: TypeIdentifier,
) -> TransferResponse:
    """Create a response of the 1.0 protocol."""
    return TransferResponse(
        typ=typ, acpt=acpt, paus=paus, xfer_id=xfer_id, vres=vres, vtyp=vtyp
    )


def from_net(stream: BinaryIO) -> Union[TransferRequest, TransferResponse]:
    """Read one message from the stream.

    Raises EOFError when the stream holds no further message and
    MessageError when the message is malformed.
    """
    try:
        value = cbor2.CBORDecoder(stream).decode()
    except EOFError:
        raise EOFError("end of stream") from None
    except cbor2.CBORDecodeError as err:
        raise MessageError(f"error decoding message: {err}") from err

    fields = _expect_list(value, 3, "transfer message")
    is_request = _expect(fields[0], bool, "IsRq")
    if is_request:
        if fields[1] is None:
            raise MessageError("invalid/malformed message")
        return TransferRequest.from_cbor_value(fields[1])
    if fields[2] is None:
        raise MessageError("invalid/malformed message")
    return TransferResponse.from_cbor_value(fields[2])