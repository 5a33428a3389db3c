"""Watches the data rate of push channels and restarts channels that stall."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import IntEnum, auto
from typing import Any, Callable, Optional, Protocol

from datatransfer.core import ChannelID, Status, Subscriber, Unsubscribe

log = logging.getLogger("dt-pushchanmon")

_UINT64 = 1 << 64

_CLEANING_UP = frozenset({Status.COMPLETING, Status.FAILING, Status.CANCELLING})
_TERMINATED = frozenset(
    {Status.COMPLETED, Status.FAILED, Status.CANCELLED, Status.CHANNEL_NOT_FOUND_ERROR}
)


class EventCode(IntEnum):
    """Kinds of channel event the monitor reacts to."""

    ACCEPT = auto()
    ERROR = auto()
    DATA_QUEUED = auto()
    DATA_SENT = auto()
    FINISH_TRANSFER = auto()
    COMPLETE = auto()


@dataclass(frozen=True)
class Event:
    """An event that happened on a data transfer channel."""

    code: EventCode
    message: str = ""


class ChannelState(Protocol):
    """The parts of a channel's state the monitor reads."""

    def channel_id(self) -> ChannelID: ...

    def status(self) -> Status: ...

    def queued(self) -> int: ...

    def sent(self) -> int: ...


class MonitorAPI(Protocol):
    """The manager operations the monitor needs."""

    def subscribe_to_events(self, subscriber: Subscriber) -> Unsubscribe: ...

    def restart_data_transfer_channel(self, chid: ChannelID) -> None: ...

    def close_data_transfer_channel_with_error(
        self, chid: ChannelID, cherr: BaseException
    ) -> None: ...


_PREFIX = "data-transfer channel push monitor config "


@dataclass(frozen=True, kw_only=True)
class Config:
    """Settings of the push channel monitor; durations are in seconds."""

    # Max time to wait for the other side to accept the push before failing
    accept_timeout: float
    # Interval between checks of the transfer rate
    interval: float
    # Min bytes that must be sent in an interval
    min_bytes_sent: int
    # Number of times to check the transfer rate per interval
    checks_per_interval: int
    # Back-off after a restart
    restart_backoff: float = 0.0
    # Number of times to try to restart before failing
    max_consecutive_restarts: int
    # Max time to wait for the Complete message once all data has been sent
    complete_timeout: float

    def __post_init__(self) -> None:
        if self.accept_timeout <= 0:
            raise ValueError(
                f"{_PREFIX}accept_timeout is {self.accept_timeout}s but must be > 0"
            )
        if self.interval <= 0:
            raise ValueError(f"{_PREFIX}interval is {self.interval}s but must be > 0")
        if self.checks_per_interval <= 0:
            raise ValueError(
                f"{_PREFIX}checks_per_interval is {self.checks_per_interval} but must be > 0"
            )
        if self.min_bytes_sent <= 0:
            raise ValueError(
                f"{_PREFIX}min_bytes_sent is {self.min_bytes_sent} but must be > 0"
            )
        if self.max_consecutive_restarts <= 0:
            raise ValueError(
                f"{_PREFIX}max_consecutive_restarts is {self.max_consecutive_restarts} "
                "but must be > 0"
            )
        if self.complete_timeout <= 0:
            raise ValueError(
                f"{_PREFIX}complete_timeout is {self.complete_timeout}s but must be > 0"
            )


@dataclass(frozen=True)
class _DataRatePoint:
    pending: int
    sent: int


def _spawn(target: Callable[..., Any], *args: Any) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


class MonitoredChannel:
    """Tracks the data rate of one push channel and restarts it when it stalls."""

    def __init__(
        self,
        mgr: MonitorAPI,
        chid: ChannelID,
        cfg: Config,
        on_shutdown: Callable[["MonitoredChannel"], None],
    ) -> None:
        self.chid = chid
        self._mgr = mgr
        self._cfg = cfg
        self._on_shutdown = on_shutdown
        self._stopped = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._shut = False
        self._unsub: Optional[Unsubscribe] = None
        self._accept_timer: Optional[threading.Timer] = None

        self._stats_lock = threading.Lock()
        self._queued = 0
        self._sent = 0
        self._points: deque[_DataRatePoint] = deque()
        self._consecutive_restarts = 0

        self._restart_lock = threading.Lock()
        self._restarted_at: Optional[float] = None

        self._start()

    def shutdown(self) -> None:
        """Stop monitoring and unsubscribe from events; repeated calls do nothing."""
        with self._shutdown_lock:
            if self._shut:
                return
            self._shut = True
            self._stopped.set()
            if self._accept_timer is not None:
                self._accept_timer.cancel()
            if self._unsub is not None:
                self._unsub()
        _spawn(self._on_shutdown, self)

    def is_shut_down(self) -> bool:
        return self._stopped.is_set()

    def wait_shutdown(self, timeout: Optional[float] = None) -> bool:
        """Wait until the channel has shut down; return whether it did."""
        return self._stopped.wait(timeout)

    def _start(self) -> None:
        with self._shutdown_lock:
            log.debug("%s: starting push channel data-rate monitoring", self.chid)
            self._watch_for_responder_accept()
            self._unsub = self._mgr.subscribe_to_events(self._on_event)

    def _on_event(self, event: Event, state: ChannelState) -> None:
        if state.channel_id() != self.chid:
            return
        with self._stats_lock:
            status = state.status()
            if status in _CLEANING_UP or status in _TERMINATED:
                log.debug("%s: stopping push channel data-rate monitoring", self.chid)
                _spawn(self.shutdown)
                return

            code = event.code
            if code == EventCode.ACCEPT:
                if self._accept_timer is not None:
                    self._accept_timer.cancel()
            elif code == EventCode.ERROR:
                log.debug("%s: data transfer error, restarting", self.chid)
                _spawn(self._restart_channel)
            elif code == EventCode.DATA_QUEUED:
                self._queued = state.queued()
            elif code == EventCode.DATA_SENT:
                self._sent = state.sent()
                self._consecutive_restarts = 0
            elif code == EventCode.FINISH_TRANSFER:
                _spawn(self._watch_for_responder_complete)

    def _watch_for_responder_accept(self) -> None:
        timer = threading.Timer(self._cfg.accept_timeout, self._on_accept_timeout)
        timer.daemon = True
        self._accept_timer = timer
        timer.start()

    def _on_accept_timeout(self) -> None:
        if self._stopped.is_set():
            return
        self._close_channel_and_shutdown(
            TimeoutError(
                f"{self.chid}: timed out waiting {self._cfg.accept_timeout}s "
                "for Accept message from remote peer"
            )
        )

    def _watch_for_responder_complete(self) -> None:
        if self._stopped.wait(self._cfg.complete_timeout):
            return
        self._close_channel_and_shutdown(
            TimeoutError(
                f"{self.chid}: timed out waiting {self._cfg.complete_timeout}s "
                "for Complete message from remote peer"
            )
        )

    def check_data_rate(self) -> None:
        """Restart the channel if too little data was sent over the last interval."""
        with self._stats_lock:
            try:
                if len(self._points) < self._cfg.checks_per_interval:
                    log.debug(
                        "%s: not enough data points to check data rate yet (%d / %d)",
                        self.chid, len(self._points), self._cfg.checks_per_interval,
                    )
                    return

                at_start = self._points.popleft()
                sent_in_interval = (self._sent - at_start.sent) % _UINT64
                log.debug(
                    "%s: since last check: sent: %d - %d = %d, pending: %d, required %d",
                    self.chid, self._sent, at_start.sent, sent_in_interval,
                    at_start.pending, self._cfg.min_bytes_sent,
                )
                if (
                    at_start.pending > sent_in_interval
                    and sent_in_interval < self._cfg.min_bytes_sent
                ):
                    _spawn(self._restart_channel)
            finally:
                pending = self._queued - self._sent if self._queued > self._sent else 0
                self._points.append(_DataRatePoint(pending=pending, sent=self._sent))

    def _restart_channel(self) -> None:
        with self._restart_lock:
            restarted_at = self._restarted_at
            if restarted_at is None:
                self._restarted_at = time.monotonic()
        if restarted_at is not None:
            log.debug(
                "%s: restart called but already restarting channel "
                "(for %.3fs so far; restart backoff is %ss)",
                self.chid, time.monotonic() - restarted_at, self._cfg.restart_backoff,
            )
            return

        with self._stats_lock:
            self._consecutive_restarts += 1
            restart_count = self._consecutive_restarts

        if restart_count > self._cfg.max_consecutive_restarts:
            self._close_channel_and_shutdown(
                RuntimeError(
                    f"{self.chid}: after {restart_count} consecutive restarts "
                    "failed to reach required data transfer rate"
                )
            )
            return

        log.info("%s: sending restart message (%d consecutive restarts)", self.chid, restart_count)
        try:
            self._mgr.restart_data_transfer_channel(self.chid)
        except Exception as err:
            self._close_channel_and_shutdown(
                RuntimeError(f"{self.chid}: failed to send restart message: {err}")
            )
        else:
            if self._cfg.restart_backoff > 0:
                log.info(
                    "%s: restart message sent successfully, backing off %ss "
                    "before allowing any other restarts",
                    self.chid, self._cfg.restart_backoff,
                )
                self._stopped.wait(self._cfg.restart_backoff)
                log.debug("%s: restart back-off %ss complete", self.chid, self._cfg.restart_backoff)

        with self._restart_lock:
            self._restarted_at = None

    def _close_channel_and_shutdown(self, cherr: BaseException) -> None:
        log.error("closing data-transfer channel: %s", cherr)
        try:
            self._mgr.close_data_transfer_channel_with_error(self.chid, cherr)
        except Exception as err:
            log.error("error closing data-transfer channel %s: %s", self.chid, err)
        self.shutdown()


class Monitor:
    """Watches the data rate of push channels; disabled when ``cfg`` is None."""

    def __init__(self, mgr: MonitorAPI, cfg: Optional[Config]) -> None:
        self._mgr = mgr
        self._cfg = cfg
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._channels: set[MonitoredChannel] = set()
        self._thread: Optional[threading.Thread] = None

    def _enabled(self) -> bool:
        return self._cfg is not None

    def add_channel(self, chid: ChannelID) -> Optional[MonitoredChannel]:
        """Start monitoring a channel; return None when the monitor is disabled."""
        if self._cfg is None:
            return None
        with self._lock:
            channel = MonitoredChannel(self._mgr, chid, self._cfg, self._on_channel_shutdown)
            self._channels.add(channel)
            return channel

    def channels(self) -> list[MonitoredChannel]:
        """Return the channels currently being monitored."""
        with self._lock:
            return list(self._channels)

    def start(self) -> None:
        """Start checking data rates periodically in a background thread."""
        if not self._enabled() or self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def shutdown(self) -> None:
        """Stop the monitor and shut down every monitored channel."""
        self._stop.set()
        if self._thread is None:
            self._on_shutdown()

    def check_data_rate(self) -> None:
        """Check the data rate of every monitored channel once."""
        for channel in self.channels():
            channel.check_data_rate()

    def _run(self) -> None:
        assert self._cfg is not None
        cfg = self._cfg
        tick = cfg.interval / cfg.checks_per_interval
        log.info(
            "Starting push channel monitor with %d checks per %ss interval "
            "(check interval %ss); min bytes per interval: %d, restart backoff: %ss; "
            "max consecutive restarts: %d",
            cfg.checks_per_interval, cfg.interval, tick, cfg.min_bytes_sent,
            cfg.restart_backoff, cfg.max_consecutive_restarts,
        )
        try:
            while not self._stop.wait(tick):
                self.check_data_rate()
        finally:
            self._on_shutdown()

    def _on_shutdown(self) -> None:
        for channel in self.channels():
            channel.shutdown()

    def _on_channel_shutdown(self, channel: MonitoredChannel) -> None:
        with self._lock:
            self._channels.discard(channel)