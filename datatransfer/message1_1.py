"""Messages of the 1.1 data transfer protocol, encoded as CBOR maps."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, BinaryIO, Optional, Union

import cbor2

from datatransfer.core import (
    EMPTY_TYPE_IDENTIFIER,
    PROTOCOL_DATA_TRANSFER_1_0,
    PROTOCOL_DATA_TRANSFER_1_1,
    UNDEF_CID,
    ChannelID,
    Cid,
    MessageType,
    TransferID,
    TypeIdentifier,
)
from datatransfer import message1_0
from datatransfer.message1_0 import (
    MessageError,
    _decode_cid,
    _defer,
    _embed,
    _encode_cid,
    _expect,
)
from datatransfer.registry import encode

__all__ = [
    "MessageError",
    "TransferRequest",
    "TransferResponse",
    "new_request",
    "restart_existing_channel_request",
    "cancel_request",
    "update_request",
    "voucher_request",
    "restart_response",
    "new_response",
    "voucher_result_response",
    "update_response",
    "cancel_response",
    "complete_response",
    "from_net",
]

_REQUEST_FIELDS = frozenset(
    {"BCid", "Type", "Paus", "Part", "Pull", "Stor", "Vouch", "VTyp", "XferID", "RestartChannel"}
)
_RESPONSE_FIELDS = frozenset({"Type", "Acpt", "Paus", "XferID", "VRes", "VTyp"})
_MESSAGE_FIELDS = frozenset({"IsRq", "Request", "Response"})
_CHANNEL_FIELDS = frozenset({"Initiator", "Responder", "ID"})


def _expect_map(value: Any, allowed: frozenset, name: str) -> dict:
    if not isinstance(value, dict):
        raise MessageError(f"{name} should be of type map")
    for key in value:
        if key not in allowed:
            raise MessageError(f"unknown struct field in {name}: {key!r}")
    return value


def _encode_channel_id(chid: ChannelID) -> dict:
    return {"Initiator": chid.initiator, "Responder": chid.responder, "ID": chid.id}


def _decode_channel_id(value: Any) -> ChannelID:
    fields = _expect_map(value, _CHANNEL_FIELDS, "channel id")
    return ChannelID(
        initiator=_expect(fields.get("Initiator", ""), str, "Initiator"),
        responder=_expect(fields.get("Responder", ""), str, "Responder"),
        id=_expect(fields.get("ID", 0), int, "ID"),
    )


def _encode_value(value: Any, context: str) -> bytes:
    try:
        return encode(value)
    except (cbor2.CBOREncodeError, TypeError, ValueError) as err:
        raise MessageError(f"{context}: {err}") from err


@dataclass
class TransferRequest:
    """A request of the 1.1 protocol."""

    bcid: Optional[Cid] = None
    typ: int = 0
    paus: bool = False
    part: bool = False
    pull: bool = False
    stor: Optional[bytes] = None
    vouch: Optional[bytes] = None
    vtyp: TypeIdentifier = EMPTY_TYPE_IDENTIFIER
    xfer_id: int = 0
    restart_channel: ChannelID = field(default_factory=ChannelID)

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
        return self.typ == MessageType.RESTART

    def is_restart_existing_channel_request(self) -> bool:
        return self.typ == MessageType.RESTART_EXISTING_CHANNEL_REQUEST

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
        """Return the channel to restart; only valid for restart-existing requests."""
        if not self.is_restart_existing_channel_request():
            raise MessageError("not a restart request")
        return self.restart_channel

    def message_for_protocol(
        self, target_protocol: str
    ) -> Union["TransferRequest", message1_0.TransferRequest]:
        """Return this request in the form understood by the given protocol."""
        if target_protocol == PROTOCOL_DATA_TRANSFER_1_1:
            return self
        if target_protocol == PROTOCOL_DATA_TRANSFER_1_0:
            if self.is_restart() or self.is_restart_existing_channel_request():
                raise MessageError("restart not supported on 1.0")
            return message1_0.new_transfer_request(
                self.bcid,
                self.typ,
                self.paus,
                self.part,
                self.pull,
                self.stor,
                self.vouch,
                self.vtyp,
                self.xfer_id,
            )
        raise MessageError("protocol not supported")

    def to_cbor_value(self) -> dict:
        return {
            "BCid": _encode_cid(self.bcid),
            "Type": self.typ,
            "Paus": self.paus,
            "Part": self.part,
            "Pull": self.pull,
            "Stor": _embed(self.stor),
            "Vouch": _embed(self.vouch),
            "VTyp": self.vtyp,
            "XferID": self.xfer_id,
            "RestartChannel": _encode_channel_id(self.restart_channel),
        }

    @classmethod
    def from_cbor_value(cls, value: Any) -> "TransferRequest":
        fields = _expect_map(value, _REQUEST_FIELDS, "transfer request")
        restart = fields.get("RestartChannel")
        return cls(
            bcid=_decode_cid(fields.get("BCid")),
            typ=_expect(fields.get("Type", 0), int, "Type"),
            paus=_expect(fields.get("Paus", False), bool, "Paus"),
            part=_expect(fields.get("Part", False), bool, "Part"),
            pull=_expect(fields.get("Pull", False), bool, "Pull"),
            stor=_defer(fields.get("Stor")),
            vouch=_defer(fields.get("Vouch")),
            vtyp=_expect(fields.get("VTyp", EMPTY_TYPE_IDENTIFIER), str, "VTyp"),
            xfer_id=_expect(fields.get("XferID", 0), int, "XferID"),
            restart_channel=ChannelID() if restart is None else _decode_channel_id(restart),
        )

    def to_net(self, stream: BinaryIO) -> None:
        """Write this request, wrapped in a transfer message, to the stream."""
        message = {"IsRq": True, "Request": self.to_cbor_value(), "Response": None}
        stream.write(cbor2.dumps(message))


@dataclass
class TransferResponse:
    """A response of the 1.1 protocol."""

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
        return self.typ == MessageType.RESTART

    def is_voucher_result(self) -> bool:
        return self.typ in (
            MessageType.VOUCHER_RESULT,
            MessageType.NEW,
            MessageType.COMPLETE,
            MessageType.RESTART,
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

    def message_for_protocol(
        self, target_protocol: str
    ) -> Union["TransferResponse", message1_0.TransferResponse]:
        """Return this response in the form understood by the given protocol."""
        if target_protocol == PROTOCOL_DATA_TRANSFER_1_1:
            return self
        if target_protocol == PROTOCOL_DATA_TRANSFER_1_0:
            if self.is_restart():
                raise MessageError("restart not supported for 1.0 protocol")
            return message1_0.new_transfer_response(
                self.typ, self.acpt, self.paus, self.xfer_id, self.vres, self.vtyp
            )
        raise MessageError(f"protocol {target_protocol} not supported")

    def to_cbor_value(self) -> dict:
        return {
            "Type": self.typ,
            "Acpt": self.acpt,
            "Paus": self.paus,
            "XferID": self.xfer_id,
            "VRes": _embed(self.vres),
            "VTyp": self.vtyp,
        }

    @classmethod
    def from_cbor_value(cls, value: Any) -> "TransferResponse":
        fields = _expect_map(value, _RESPONSE_FIELDS, "transfer response")
        return cls(
            typ=_expect(fields.get("Type", 0), int, "Type"),
            acpt=_expect(fields.get("Acpt", False), bool, "Acpt"),
            paus=_expect(fields.get("Paus", False), bool, "Paus"),
            xfer_id=_expect(fields.get("XferID", 0), int, "XferID"),
            vres=_defer(fields.get("VRes")),
            vtyp=_expect(fields.get("VTyp", EMPTY_TYPE_IDENTIFIER), str, "VTyp"),
        )

    def to_net(self, stream: BinaryIO) -> None:
        """Write this response, wrapped in a transfer message, to the stream."""
        message = {"IsRq": False, "Request": None, "Response": self.to_cbor_value()}
        stream.write(cbor2.dumps(message))


def new_request(
    transfer_id: TransferID,
    is_restart: bool,
    is_pull: bool,
    vtype: TypeIdentifier,
    voucher: Any,
    base_cid: Cid,
    selector: Any,
) -> TransferRequest:
    """Create a new (or restart) request for a transfer."""
    vbytes = _encode_value(voucher, "Creating request")
    if base_cid is None or not base_cid.defined:
        raise MessageError("base CID must be defined")
    sel_bytes = _encode_value(selector, "Error encoding selector")
    typ = MessageType.RESTART if is_restart else MessageType.NEW
    return TransferRequest(
        bcid=base_cid,
        typ=int(typ),
        pull=is_pull,
        stor=sel_bytes,
        vouch=vbytes,
        vtyp=vtype,
        xfer_id=transfer_id,
    )


def restart_existing_channel_request(channel_id: ChannelID) -> TransferRequest:
    """Create a request asking the other side to restart an existing channel."""
    return TransferRequest(
        typ=int(MessageType.RESTART_EXISTING_CHANNEL_REQUEST), restart_channel=channel_id
    )


def cancel_request(transfer_id: TransferID) -> TransferRequest:
    """Create a request cancelling an in-progress transfer."""
    return TransferRequest(typ=int(MessageType.CANCEL), xfer_id=transfer_id)


def update_request(transfer_id: TransferID, is_paused: bool) -> TransferRequest:
    """Create a request updating the pause state of a transfer."""
    return TransferRequest(typ=int(MessageType.UPDATE), paus=is_paused, xfer_id=transfer_id)


def voucher_request(transfer_id: TransferID, vtype: TypeIdentifier, voucher: Any) -> TransferRequest:
    """Create a request carrying an intermediate voucher."""
    vbytes = _encode_value(voucher, "Creating request")
    return TransferRequest(
        typ=int(MessageType.VOUCHER), vouch=vbytes, vtyp=vtype, xfer_id=transfer_id
    )


def _response(
    typ: MessageType,
    transfer_id: TransferID,
    accepted: bool,
    is_paused: bool,
    voucher_result_type: TypeIdentifier,
    voucher_result: Any,
) -> TransferResponse:
    vbytes = _encode_value(voucher_result, "Creating request")
    return TransferResponse(
        typ=int(typ),
        acpt=accepted,
        paus=is_paused,
        xfer_id=transfer_id,
        vtyp=voucher_result_type,
        vres=vbytes,
    )


def restart_response(
    transfer_id: TransferID,
    accepted: bool,
    is_paused: bool,
    voucher_result_type: TypeIdentifier,
    voucher_result: Any,
) -> TransferResponse:
    """Create a response to a restart request."""
    return _response(
        MessageType.RESTART, transfer_id, accepted, is_paused, voucher_result_type, voucher_result
    )


def new_response(
    transfer_id: TransferID,
    accepted: bool,
    is_paused: bool,
    voucher_result_type: TypeIdentifier,
    voucher_result: Any,
) -> TransferResponse:
    """Create the first response to a new request."""
    return _response(
        MessageType.NEW, transfer_id, accepted, is_paused, voucher_result_type, voucher_result
    )


def voucher_result_response(
    transfer_id: TransferID,
    accepted: bool,
    is_paused: bool,
    voucher_result_type: TypeIdentifier,
    voucher_result: Any,
) -> TransferResponse:
    """Create a response carrying a voucher result."""
    return _response(
        MessageType.VOUCHER_RESULT,
        transfer_id,
        accepted,
        is_paused,
        voucher_result_type,
        voucher_result,
    )


def update_response(transfer_id: TransferID, is_paused: bool) -> TransferResponse:
    """Create a response updating the pause state of a transfer."""
    return TransferResponse(typ=int(MessageType.UPDATE), paus=is_paused, xfer_id=transfer_id)


def cancel_response(transfer_id: TransferID) -> TransferResponse:
    """Create a response cancelling a transfer."""
    return TransferResponse(typ=int(MessageType.CANCEL), xfer_id=transfer_id)


def complete_response(
    transfer_id: TransferID,
    is_accepted: bool,
    is_paused: bool,
    voucher_result_type: TypeIdentifier,
    voucher_result: Any,
) -> TransferResponse:
    """Create a response marking the transfer as complete."""
    return _response(
        MessageType.COMPLETE,
        transfer_id,
        is_accepted,
        is_paused,
        voucher_result_type,
        voucher_result,
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

    fields = _expect_map(value, _MESSAGE_FIELDS, "transfer message")
    is_request = _expect(fields.get("IsRq", False), bool, "IsRq")
    if is_request:
        request = fields.get("Request")
        if request is None:
            raise MessageError("invalid/malformed message")
        return TransferRequest.from_cbor_value(request)
    response = fields.get("Response")
    if response is None:
        raise MessageError("invalid/malformed message")
    return TransferResponse.from_cbor_value(response)