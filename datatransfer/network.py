"""Network layer that sends and receives data transfer messages over peer streams."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

from datatransfer import message1_0, message1_1
from datatransfer.core import PROTOCOL_DATA_TRANSFER_1_0, PROTOCOL_DATA_TRANSFER_1_1
from datatransfer.message1_0 import MessageError

log = logging.getLogger("data_transfer_network")

DEFAULT_OPEN_STREAM_TIMEOUT = 10.0
DEFAULT_SEND_MESSAGE_TIMEOUT = 10.0
DEFAULT_MAX_STREAM_OPEN_ATTEMPTS = 5.0
DEFAULT_MIN_ATTEMPT_DURATION = 1.0
DEFAULT_MAX_ATTEMPT_DURATION = 5 * 60.0
DEFAULT_BACKOFF_FACTOR = 5.0

DEFAULT_DATA_TRANSFER_PROTOCOLS = (PROTOCOL_DATA_TRANSFER_1_1, PROTOCOL_DATA_TRANSFER_1_0)

_KNOWN_PROTOCOLS = frozenset(DEFAULT_DATA_TRANSFER_PROTOCOLS)


class NetworkError(Exception):
    """Raised when a message cannot be sent to a peer."""


class Receiver(Protocol):
    """Handles messages arriving from the network."""

    def receive_request(self, sender: str, incoming: Any) -> None: ...

    def receive_response(self, sender: str, incoming: Any) -> None: ...

    def receive_restart_existing_channel_request(self, sender: str, incoming: Any) -> None: ...

    def receive_error(self, error: BaseException) -> None: ...


class Host(Protocol):
    """A peer-to-peer host able to open streams to other peers.

    Streams returned by ``new_stream`` and passed to handlers carry the
    attributes ``protocol`` and ``remote_peer`` and the methods ``read``,
    ``write``, ``close``, ``reset`` and ``set_write_deadline``.
    """

    peer_id: str

    def new_stream(self, peer: str, protocols: Sequence[str], timeout: float) -> Any:
        """Open a stream on the first of ``protocols`` the peer supports."""
        ...

    def set_stream_handler(self, protocol: str, handler: Callable[[Any], None]) -> None: ...

    def connect(self, peer: str) -> None: ...

    def protect(self, peer: str, tag: str) -> None: ...

    def unprotect(self, peer: str, tag: str) -> bool: ...


class DataTransferNetwork:
    """Sends data transfer messages through a host and dispatches incoming ones."""

    def __init__(
        self,
        host: Host,
        *,
        protocols: Optional[Iterable[str]] = None,
        open_stream_timeout: float = DEFAULT_OPEN_STREAM_TIMEOUT,
        send_message_timeout: float = DEFAULT_SEND_MESSAGE_TIMEOUT,
        max_stream_open_attempts: float = DEFAULT_MAX_STREAM_OPEN_ATTEMPTS,
        min_attempt_duration: float = DEFAULT_MIN_ATTEMPT_DURATION,
        max_attempt_duration: float = DEFAULT_MAX_ATTEMPT_DURATION,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    ) -> None:
        self._host = host
        self._receiver: Optional[Receiver] = None
        self._protocols = list(
            DEFAULT_DATA_TRANSFER_PROTOCOLS if protocols is None else protocols
        )
        self._open_stream_timeout = open_stream_timeout
        self._send_message_timeout = send_message_timeout
        self._max_attempts = float(max_stream_open_attempts)
        self._min_attempt_duration = min_attempt_duration
        self._max_attempt_duration = max_attempt_duration
        self._backoff_factor = backoff_factor

    @property
    def protocols(self) -> list[str]:
        return list(self._protocols)

    def _backoff(self, attempt: int) -> float:
        low, high = self._min_attempt_duration, self._max_attempt_duration
        if low >= high:
            return high
        try:
            duration = low * self._backoff_factor**attempt
        except OverflowError:
            return high
        duration = random.random() * (duration - low) + low
        return min(duration, high)

    def _open_stream(self, peer: str, protocols: Sequence[str]) -> Any:
        start = time.monotonic()
        attempt = 0
        while True:
            at = time.monotonic()
            try:
                stream = self._host.new_stream(peer, list(protocols), self._open_stream_timeout)
            except Exception as err:
                n_attempts = attempt + 1
                if n_attempts >= self._max_attempts:
                    raise NetworkError(
                        f"exhausted {self._max_attempts:g} attempts but failed to open "
                        f"stream to {peer}, err: {err}"
                    ) from err
                delay = self._backoff(attempt)
                attempt += 1
                log.warning(
                    "failed to open stream to %s on attempt %d of %g after %.3fs, "
                    "waiting %.3fs to try again, err: %s",
                    peer, n_attempts, self._max_attempts, time.monotonic() - at, delay, err,
                )
                time.sleep(delay)
                continue
            if attempt > 0:
                log.debug(
                    "opened stream to %s on attempt %d of %g after %.3fs",
                    peer, attempt + 1, self._max_attempts, time.monotonic() - start,
                )
            return stream

    def send_message(self, peer: str, outgoing: Any) -> None:
        """Send a message to a peer, converting it for the negotiated protocol."""
        stream = self._open_stream(peer, self._protocols)
        try:
            outgoing = outgoing.message_for_protocol(stream.protocol)
        except MessageError as err:
            stream.reset()
            raise NetworkError(f"failed to convert message for protocol: {err}") from err

        try:
            self._msg_to_stream(stream, outgoing)
        except Exception as err:
            try:
                stream.reset()
            except Exception as reset_err:
                log.error("%s", err)
                raise reset_err from err
            raise
        stream.close()

    def set_delegate(self, receiver: Receiver) -> None:
        """Register the receiver of incoming messages and install stream handlers."""
        self._receiver = receiver
        for protocol in self._protocols:
            self._host.set_stream_handler(protocol, self.handle_new_stream)

    def connect_to(self, peer: str) -> None:
        """Establish a connection to the given peer."""
        self._host.connect(peer)

    def handle_new_stream(self, stream: Any) -> None:
        """Read every message from an incoming stream and pass it to the receiver."""
        try:
            receiver = self._receiver
            if receiver is None:
                stream.reset()
                return
            if stream.protocol == PROTOCOL_DATA_TRANSFER_1_1:
                read = message1_1.from_net
            else:
                read = message1_0.from_net
            while True:
                try:
                    received = read(stream)
                except EOFError:
                    return
                except Exception as err:
                    stream.reset()
                    threading.Thread(
                        target=receiver.receive_error, args=(err,), daemon=True
                    ).start()
                    log.debug("net handle_new_stream from %s error: %s", stream.remote_peer, err)
                    return

                sender = stream.remote_peer
                log.debug("net handle_new_stream from %s", sender)
                if received.is_request():
                    if received.is_restart_existing_channel_request():
                        receiver.receive_restart_existing_channel_request(sender, received)
                    else:
                        receiver.receive_request(sender, received)
                else:
                    receiver.receive_response(sender, received)
        finally:
            stream.close()

    def peer_id(self) -> str:
        """Return the peer id of the underlying host."""
        return self._host.peer_id

    def protect(self, peer: str, tag: str) -> None:
        self._host.protect(peer, tag)

    def unprotect(self, peer: str, tag: str) -> bool:
        return self._host.unprotect(peer, tag)

    def _msg_to_stream(self, stream: Any, msg: Any) -> None:
        if msg.is_request():
            log.debug("Outgoing request message for transfer ID: %d", msg.transfer_id())

        try:
            stream.set_write_deadline(time.time() + self._send_message_timeout)
        except Exception as err:
            log.warning("error setting deadline: %s", err)

        if stream.protocol not in _KNOWN_PROTOCOLS:
            raise NetworkError(f"unrecognized protocol on remote: {stream.protocol}")

        msg.to_net(stream)

        try:
            stream.set_write_deadline(None)
        except Exception as err:
            log.warning("error resetting deadline: %s", err)