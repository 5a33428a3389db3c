"""Core types of the data transfer protocol: statuses, identifiers and interfaces."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Callable, Optional, Protocol, runtime_checkable

TypeIdentifier = str
TransferID = int

EMPTY_TYPE_IDENTIFIER: TypeIdentifier = ""

PROTOCOL_DATA_TRANSFER_1_1 = "/fil/datatransfer/1.1.0"
# The legacy protocol does not support restarting channels.
PROTOCOL_DATA_TRANSFER_1_0 = "/fil/datatransfer/1.0.0"


class Status(IntEnum):
    """Status of the transfer on a given channel."""

    REQUESTED = 0
    ONGOING = 1
    TRANSFER_FINISHED = 2
    RESPONDER_COMPLETED = 3
    FINALIZING = 4
    COMPLETING = 5
    COMPLETED = 6
    FAILING = 7
    FAILED = 8
    CANCELLING = 9
    CANCELLED = 10
    INITIATOR_PAUSED = 11
    RESPONDER_PAUSED = 12
    BOTH_PAUSED = 13
    RESPONDER_FINALIZING = 14
    RESPONDER_FINALIZING_TRANSFER_FINISHED = 15
    CHANNEL_NOT_FOUND_ERROR = 16

    def __str__(self) -> str:
        return status_name(self)


_STATUS_NAMES: dict[Status, str] = {
    Status.REQUESTED: "Requested",
    Status.ONGOING: "Ongoing",
    Status.TRANSFER_FINISHED: "TransferFinished",
    Status.RESPONDER_COMPLETED: "ResponderCompleted",
    Status.FINALIZING: "Finalizing",
    Status.COMPLETING: "Completing",
    Status.COMPLETED: "Completed",
    Status.FAILING: "Failing",
    Status.FAILED: "Failed",
    Status.CANCELLING: "Cancelling",
    Status.CANCELLED: "Cancelled",
    Status.INITIATOR_PAUSED: "InitiatorPaused",
    Status.RESPONDER_PAUSED: "ResponderPaused",
    Status.BOTH_PAUSED: "BothPaused",
    Status.RESPONDER_FINALIZING: "ResponderFinalizing",
    Status.RESPONDER_FINALIZING_TRANSFER_FINISHED: "ResponderFinalizingTransferFinished",
    Status.CHANNEL_NOT_FOUND_ERROR: "ChannelNotFoundError",
}


def status_name(status: int) -> str:
    """Return the human readable name of a status, or "" if it is unknown."""
    return _STATUS_NAMES.get(status, "")


class MessageType(IntEnum):
    """Kinds of wire message. New kinds are only ever appended."""

    NEW = 0
    UPDATE = 1
    CANCEL = 2
    COMPLETE = 3
    VOUCHER = 4
    VOUCHER_RESULT = 5
    RESTART = 6
    RESTART_EXISTING_CHANNEL_REQUEST = 7


@dataclass(frozen=True)
class ChannelID:
    """Unique identifier of a transfer channel."""

    initiator: str = ""
    responder: str = ""
    id: TransferID = 0

    def __str__(self) -> str:
        return f"{self.initiator}-{self.responder}-{self.id}"


_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def _base58(data: bytes) -> str:
    number = int.from_bytes(data, "big")
    digits = []
    while number:
        number, rem = divmod(number, 58)
        digits.append(_B58_ALPHABET[rem])
    leading = len(data) - len(data.lstrip(b"\x00"))
    return "1" * leading + "".join(reversed(digits))


@dataclass(frozen=True)
class Cid:
    """A content identifier held in its binary form; empty bytes mean undefined."""

    raw: bytes = b""

    @property
    def defined(self) -> bool:
        return bool(self.raw)

    @property
    def is_v0(self) -> bool:
        return len(self.raw) == 34 and self.raw[0] == 0x12 and self.raw[1] == 0x20

    def __str__(self) -> str:
        if self.is_v0:
            return _base58(self.raw)
        encoded = base64.b32encode(self.raw).decode("ascii").lower().rstrip("=")
        return "b" + encoded


UNDEF_CID = Cid()


@runtime_checkable
class Registerable(Protocol):
    """A value that can be registered and sent over the wire by type identifier."""

    def type(self) -> TypeIdentifier: ...


class Message(Protocol):
    """A request or response of the data transfer protocol."""

    def is_request(self) -> bool: ...

    def is_restart(self) -> bool: ...

    def is_new(self) -> bool: ...

    def is_update(self) -> bool: ...

    def is_paused(self) -> bool: ...

    def is_cancel(self) -> bool: ...

    def transfer_id(self) -> TransferID: ...

    def to_net(self, stream: Any) -> None: ...

    def message_for_protocol(self, target_protocol: str) -> "Message": ...


class Request(Message, Protocol):
    """A request message."""

    def is_pull(self) -> bool: ...

    def is_voucher(self) -> bool: ...

    def voucher_type(self) -> TypeIdentifier: ...

    def voucher(self, decoder: Any) -> Any: ...

    def base_cid(self) -> Cid: ...

    def selector(self) -> Any: ...

    def is_restart_existing_channel_request(self) -> bool: ...

    def restart_channel_id(self) -> ChannelID: ...


class Response(Message, Protocol):
    """A response message."""

    def is_voucher_result(self) -> bool: ...

    def is_complete(self) -> bool: ...

    def accepted(self) -> bool: ...

    def voucher_result_type(self) -> TypeIdentifier: ...

    def voucher_result(self, decoder: Any) -> Any: ...

    def empty_voucher_result(self) -> bool: ...


class RequestValidator(Protocol):
    """Validates incoming push and pull requests."""

    def validate_push(self, sender: str, voucher: Any, base_cid: Cid, selector: Any) -> Any:
        """Validate a push request from the peer that will send data."""
        ...

    def validate_pull(self, receiver: str, voucher: Any, base_cid: Cid, selector: Any) -> Any:
        """Validate a pull request from the peer that will receive data."""
        ...


class Revalidator(Protocol):
    """Revalidates in-progress requests by asking for additional vouchers.

    The ``on_*`` hooks return ``(handled, voucher_result)``; raising signals
    a pause request or a failure.
    """

    def revalidate(self, channel_id: ChannelID, voucher: Any) -> Any: ...

    def on_pull_data_sent(
        self, chid: ChannelID, additional_bytes_sent: int
    ) -> tuple[bool, Any]: ...

    def on_push_data_received(
        self, chid: ChannelID, additional_bytes_received: int
    ) -> tuple[bool, Any]: ...

    def on_complete(self, chid: ChannelID) -> tuple[bool, Any]: ...


TransportConfigurer = Callable[[ChannelID, Any, Any], None]
ReadyFunc = Callable[[Optional[BaseException]], None]
Subscriber = Callable[[Any, Any], None]
Unsubscribe = Callable[[], None]


class Manager(Protocol):
    """The interface presented by every data transfer implementation."""

    def start(self) -> None: ...

    def on_ready(self, ready_func: ReadyFunc) -> None: ...

    def stop(self) -> None: ...

    def register_voucher_type(self, voucher_type: Any, validator: RequestValidator) -> None: ...

    def register_revalidator(self, voucher_type: Any, revalidator: Revalidator) -> None: ...

    def register_voucher_result_type(self, result_type: Any) -> None: ...

    def register_transport_configurer(
        self, voucher_type: Any, configurer: TransportConfigurer
    ) -> None: ...

    def open_push_data_channel(
        self, to: str, voucher: Any, base_cid: Cid, selector: Any
    ) -> ChannelID: ...

    def open_pull_data_channel(
        self, to: str, voucher: Any, base_cid: Cid, selector: Any
    ) -> ChannelID: ...

    def send_voucher(self, chid: ChannelID, voucher: Any) -> None: ...

    def close_data_transfer_channel(self, chid: ChannelID) -> None: ...

    def pause_data_transfer_channel(self, chid: ChannelID) -> None: ...

    def resume_data_transfer_channel(self, chid: ChannelID) -> None: ...

    def transfer_channel_status(self, chid: ChannelID) -> Status: ...

    def channel_state(self, chid: ChannelID) -> Any: ...

    def subscribe_to_events(self, subscriber: Subscriber) -> Unsubscribe: ...

    def in_progress_channels(self) -> dict[ChannelID, Any]: ...

    def restart_data_transfer_channel(self, chid: ChannelID) -> None: ...