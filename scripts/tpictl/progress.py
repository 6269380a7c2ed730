"""Flash progress monitoring: status polling, speed/ETA, backoff, deadlines."""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from tpictl import POLL_TIMEOUT, WATCH_TIMEOUT
from tpictl.client import (
    BMCConnectionError,
    BMCHTTPError,
    BMCProtocolError,
    BMCServerError,
    TransferCancelled,
    TransferTimeout,
)


class TransferState(Enum):
    INITIATING = "initiating"
    UPLOADING = "uploading"
    IN_PROGRESS = "in_progress"
    VERIFYING = "verifying"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def terminal(self):
        return self in (TransferState.DONE, TransferState.ERROR, TransferState.CANCELLED)


class Clock:
    """Wall clock. Tests substitute a fake that advances on sleep()."""

    def now(self):
        return time.monotonic()

    def sleep(self, seconds, interrupt=None):
        if seconds <= 0:
            return
        if interrupt is not None:
            interrupt.wait(seconds)
        else:
            time.sleep(seconds)


class Deadline:
    """Cancellable point in time after which an operation must stop."""

    def __init__(self, timeout, clock=None):
        self.clock = clock or Clock()
        self.timeout = timeout
        self.expires_at = self.clock.now() + timeout
        self._cancelled = threading.Event()

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self):
        return self._cancelled.is_set()

    def remaining(self):
        return max(0.0, self.expires_at - self.clock.now())

    def expired(self):
        return self.cancelled or self.remaining() <= 0

    def sleep(self, seconds):
        """Sleep up to ``seconds``; wakes early on cancel.

        Returns False if the deadline is over afterwards.
        """
        if self.expired():
            return False
        self.clock.sleep(min(seconds, self.remaining()), self._cancelled)
        return not self.expired()

    def error(self):
        if self.cancelled:
            return TransferCancelled("operation cancelled")
        return TransferTimeout(f"operation timed out after {self.timeout:.0f}s")


@dataclass
class ProgressSample:
    timestamp: float
    bytes_written: int


@dataclass
class ProgressUpdate:
    bytes_written: int
    total: int
    percent: float
    speed: Optional[float]
    eta: Optional[float]
    elapsed: float


class SpeedWindow:
    """Arithmetic mean of the most recent transfer rates."""

    def __init__(self, size=5):
        self._rates = deque(maxlen=size)

    def add(self, rate):
        self._rates.append(rate)

    def __len__(self):
        return len(self._rates)

    def mean(self):
        if not self._rates:
            return None
        return sum(self._rates) / len(self._rates)


class ProgressReporter:
    """Receives progress events. This base class writes them to a logger."""

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(__name__)

    def progress(self, update):
        self.logger.info(f"Progress: {update.percent:.1f}% ({update.bytes_written}/{update.total} bytes)")

    def verifying(self):
        self.logger.info("Verifying checksum...")

    def waiting(self):
        self.logger.info("Waiting for flashing to complete...")

    def done(self):
        self.logger.info("Flashing completed successfully")

    def poll_error(self, error, count, limit):
        self.logger.warning(f"Error checking progress: {error}. Retrying... ({count}/{limit})")

    def resumed(self, count):
        self.logger.info(f"Resumed progress monitoring after {count} errors")


def _as_int(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


class ProgressMonitor:
    """Polls the BMC for one transfer until it completes.

    A monitor is bound to a single handle. Status updates for any other
    handle are ignored. Shared progress state is updated under a lock since
    reporters may be read from another thread.
    """

    INITIAL_DELAY = 3
    POLL_INTERVAL = 1
    MAX_CONSECUTIVE_ERRORS = 20
    MAX_BACKOFF = 10
    SPEED_WINDOW = 5

    def __init__(self, client, handle, file_length, reporter=None, clock=None, logger=None):
        self.client = client
        self.handle = handle
        self.file_length = file_length
        self.logger = logger or logging.getLogger(__name__)
        self.reporter = reporter or ProgressReporter(self.logger)
        self.clock = clock or Clock()

        self.state = TransferState.IN_PROGRESS
        self.consecutive_errors = 0
        self.last_update = None
        self.speed_window = SpeedWindow(self.SPEED_WINDOW)
        self._last_sample = None
        self._last_error_msg = None
        self._started = None
        self._lock = threading.Lock()

    def watch(self, deadline=None):
        """Poll until the transfer is done.

        Returns TransferState.DONE.

        Raises:
            BMCServerError: the BMC reported an error
            BMCConnectionError: too many consecutive polling failures
            TransferTimeout/TransferCancelled: the deadline ran out
        """
        if deadline is None:
            deadline = Deadline(WATCH_TIMEOUT, self.clock)
        self._started = self.clock.now()

        if not deadline.sleep(self.INITIAL_DELAY):
            self._abort(deadline)

        while not self.state.terminal:
            if not deadline.sleep(self.POLL_INTERVAL):
                self._abort(deadline)

            try:
                status = self.poll(deadline)
            except (TransferTimeout, TransferCancelled):
                self.state = TransferState.CANCELLED
                raise
            except (BMCConnectionError, BMCHTTPError, BMCProtocolError) as e:
                self._record_error(e)
                if not deadline.sleep(self.backoff()):
                    self._abort(deadline)
                continue

            if self.consecutive_errors:
                self.reporter.resumed(self.consecutive_errors)
                self.consecutive_errors = 0
                self._last_error_msg = None

            self.apply_status(status)

        return self.state

    def poll(self, deadline=None):
        """Fetch and decode one flash status document."""
        req = self.client.new_request()
        req.add_param("opt", "get").add_param("type", "flash")
        req.timeout = POLL_TIMEOUT
        req.deadline = deadline

        resp = self.client.send(req)
        if resp.status_code != 200:
            raise BMCHTTPError(
                f"progress request failed with status {resp.status_code}",
                status_code=resp.status_code,
                body=resp.text,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise BMCProtocolError(f"failed to parse progress response: {e}") from e
        if not isinstance(data, dict):
            raise BMCProtocolError(f"unexpected progress response: {data!r}")
        return data

    def apply_status(self, data):
        """Advance the state machine with one decoded status document."""
        if self.state.terminal:
            return self.state

        if "Transferring" in data:
            self._on_transferring(data["Transferring"])
        elif "Done" in data:
            self.state = TransferState.DONE
            self.reporter.done()
        elif "Error" in data:
            self.state = TransferState.ERROR
            raise BMCServerError(
                f"error occurred during flashing: {data['Error']}", payload=data["Error"]
            )
        else:
            self.reporter.waiting()
        return self.state

    def backoff(self):
        return min(self.consecutive_errors // 2, self.MAX_BACKOFF)

    def _on_transferring(self, payload):
        if not isinstance(payload, dict):
            return
        transfer_id = _as_int(payload.get("id"))
        if transfer_id is None:
            return
        if transfer_id != self.handle:
            self.logger.debug(f"Ignoring status for transfer {transfer_id}, watching {self.handle}")
            return
        bytes_written = _as_int(payload.get("bytes_written"))
        if bytes_written is None:
            return

        with self._lock:
            if bytes_written >= self.file_length:
                if self.state != TransferState.VERIFYING:
                    self.state = TransferState.VERIFYING
                    self.reporter.verifying()
                return
            if self.state == TransferState.VERIFYING:
                return

            now = self.clock.now()
            last = self._last_sample
            if last is not None and now > last.timestamp and bytes_written >= last.bytes_written:
                self.speed_window.add((bytes_written - last.bytes_written) / (now - last.timestamp))
            self._last_sample = ProgressSample(now, bytes_written)

            speed = self.speed_window.mean()
            eta = None
            if speed:
                eta = (self.file_length - bytes_written) / speed

            started = self._started if self._started is not None else now
            self.last_update = ProgressUpdate(
                bytes_written=bytes_written,
                total=self.file_length,
                percent=bytes_written / self.file_length * 100,
                speed=speed,
                eta=eta,
                elapsed=now - started,
            )
        self.reporter.progress(self.last_update)

    def _record_error(self, error):
        with self._lock:
            self.consecutive_errors += 1
            count = self.consecutive_errors
            message = str(error)
            if message != self._last_error_msg or count % 5 == 1:
                self.reporter.poll_error(error, count, self.MAX_CONSECUTIVE_ERRORS)
                self._last_error_msg = message

        if count >= self.MAX_CONSECUTIVE_ERRORS:
            self.state = TransferState.ERROR
            raise BMCConnectionError(
                f"too many consecutive errors ({count}): {error}"
            ) from error

    def _abort(self, deadline):
        self.state = TransferState.CANCELLED
        raise deadline.error()


def watch_transfer(client, handle, file_length, deadline=None, reporter=None, clock=None, logger=None):
    """Watch ``handle`` on ``client`` until it reaches a terminal state."""
    monitor = ProgressMonitor(
        client, handle, file_length, reporter=reporter, clock=clock, logger=logger
    )
    return monitor.watch(deadline)
