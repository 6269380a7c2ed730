import os
import sys
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'scripts')))

from fakes import FakeClock, FakeResponse, ScriptedClient, done, transferring
from tpictl.client import (
    BMCConnectionError,
    BMCServerError,
    TransferCancelled,
    TransferTimeout,
)
from tpictl.progress import (
    Deadline,
    ProgressMonitor,
    ProgressReporter,
    SpeedWindow,
    TransferState,
    watch_transfer,
)

HANDLE = 7
MIB = 1024 * 1024


def refused():
    return BMCConnectionError("Connection error to 10.0.0.5: refused")


class RecordingReporter(ProgressReporter):

    def __init__(self):
        super().__init__()
        self.updates = []
        self.events = []

    def progress(self, update):
        self.updates.append(update)

    def verifying(self):
        self.events.append("verifying")

    def waiting(self):
        self.events.append("waiting")

    def done(self):
        self.events.append("done")

    def poll_error(self, error, count, limit):
        self.events.append(("error", count))

    def resumed(self, count):
        self.events.append(("resumed", count))


class TestSpeedWindow(unittest.TestCase):

    def test_empty(self):
        self.assertIsNone(SpeedWindow().mean())

    def test_single_sample_is_its_rate(self):
        window = SpeedWindow()
        window.add(1234.5)
        self.assertEqual(window.mean(), 1234.5)

    def test_mean_of_last_five_only(self):
        window = SpeedWindow()
        for rate in [1000, 10, 20, 30, 40, 50]:
            window.add(rate)
        self.assertEqual(len(window), 5)
        self.assertEqual(window.mean(), 30)


class TestDeadline(unittest.TestCase):

    def test_remaining_and_expiry(self):
        clock = FakeClock()
        deadline = Deadline(10, clock)
        self.assertEqual(deadline.remaining(), 10)
        self.assertTrue(deadline.sleep(4))
        self.assertEqual(deadline.remaining(), 6)
        self.assertFalse(deadline.sleep(100))
        self.assertEqual(clock.sleeps[-1], 6)
        self.assertIsInstance(deadline.error(), TransferTimeout)

    def test_cancel(self):
        deadline = Deadline(10, FakeClock())
        deadline.cancel()
        self.assertTrue(deadline.expired())
        self.assertFalse(deadline.sleep(1))
        self.assertIsInstance(deadline.error(), TransferCancelled)


class TestProgressMonitor(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.reporter = RecordingReporter()

    def _monitor(self, script, file_length=500 * MIB):
        client = ScriptedClient(script, clock=self.clock)
        monitor = ProgressMonitor(client, HANDLE, file_length, reporter=self.reporter, clock=self.clock)
        return client, monitor

    def test_poll_request_shape(self):
        client, monitor = self._monitor([done()])
        monitor.watch()

        req = client.sent[0]
        self.assertEqual(req.method, "GET")
        self.assertEqual(req.params, [("opt", "get"), ("type", "flash")])
        self.assertEqual(req.timeout, 45)
        self.assertIsNotNone(req.deadline)

    def test_happy_path(self):
        client, monitor = self._monitor([
            transferring(HANDLE, 0),
            transferring(HANDLE, 250 * MIB),
            transferring(HANDLE, 500 * MIB),
            done(),
        ])

        self.assertEqual(monitor.watch(), TransferState.DONE)
        self.assertEqual(monitor.state, TransferState.DONE)
        self.assertEqual([u.percent for u in self.reporter.updates], [0.0, 50.0])
        self.assertEqual(self.reporter.events, ["verifying", "done"])
        self.assertEqual(monitor.consecutive_errors, 0)

    def test_initial_delay_then_one_second_ticks(self):
        _, monitor = self._monitor([done()])
        monitor.watch()
        self.assertEqual(self.clock.sleeps, [3, 1])

    def test_percent_is_monotonic(self):
        steps = [0, 10 * MIB, 75 * MIB, 120 * MIB, 300 * MIB, 499 * MIB]
        _, monitor = self._monitor([transferring(HANDLE, b) for b in steps] + [done()])
        monitor.watch()

        percents = [u.percent for u in self.reporter.updates]
        self.assertEqual(len(percents), len(steps))
        self.assertEqual(percents, sorted(percents))

    def test_speed_and_eta(self):
        _, monitor = self._monitor([
            transferring(HANDLE, 0),
            transferring(HANDLE, 10 * MIB),
            done(),
        ], file_length=100 * MIB)
        monitor.watch()

        first, second = self.reporter.updates
        self.assertIsNone(first.speed)
        self.assertIsNone(first.eta)
        # One tick of one second between the two samples
        self.assertEqual(second.speed, 10 * MIB)
        self.assertEqual(second.eta, 9)

    def test_speed_uses_last_five_samples(self):
        monitor = ProgressMonitor(MagicMock(), HANDLE, 1000 * MIB, reporter=self.reporter, clock=self.clock)
        written = 0
        increments = [100, 1, 2, 3, 4, 5]
        monitor.apply_status({"Transferring": {"id": HANDLE, "bytes_written": 0}})
        for inc in increments:
            self.clock.advance(1)
            written += inc * MIB
            monitor.apply_status({"Transferring": {"id": HANDLE, "bytes_written": written}})

        self.assertEqual(self.reporter.updates[1].speed, 100 * MIB)
        self.assertEqual(self.reporter.updates[-1].speed, 3 * MIB)

    def test_mismatched_handle_is_ignored(self):
        _, monitor = self._monitor([
            transferring(HANDLE + 1, 100 * MIB),
            transferring(HANDLE + 1, 500 * MIB),
            done(),
        ])
        monitor.watch()
        self.assertEqual(self.reporter.updates, [])
        self.assertNotIn("verifying", self.reporter.events)

    def test_apply_status_ignores_foreign_handle(self):
        monitor = ProgressMonitor(MagicMock(), HANDLE, 100, reporter=self.reporter, clock=self.clock)
        monitor.apply_status({"Transferring": {"id": 99, "bytes_written": 50}})
        self.assertEqual(monitor.state, TransferState.IN_PROGRESS)
        self.assertIsNone(monitor.last_update)
        self.assertEqual(len(monitor.speed_window), 0)

    def test_string_fields_are_accepted(self):
        _, monitor = self._monitor([
            FakeResponse(200, {"Transferring": {"id": str(HANDLE), "bytes_written": "1024"}}),
            done(),
        ], file_length=4096)
        monitor.watch()
        self.assertEqual(self.reporter.updates[0].bytes_written, 1024)
        self.assertEqual(self.reporter.updates[0].percent, 25.0)

    def test_verifying_notice_is_emitted_once(self):
        _, monitor = self._monitor([
            transferring(HANDLE, 500 * MIB),
            transferring(HANDLE, 500 * MIB),
            transferring(HANDLE, 500 * MIB),
            done(),
        ])
        monitor.watch()
        self.assertEqual(self.reporter.events.count("verifying"), 1)

    def test_unknown_shape_keeps_waiting(self):
        _, monitor = self._monitor([FakeResponse(200, {"Idle": {}}), done()])
        self.assertEqual(monitor.watch(), TransferState.DONE)
        self.assertIn("waiting", self.reporter.events)

    def test_server_error_is_terminal(self):
        _, monitor = self._monitor([
            transferring(HANDLE, 10),
            FakeResponse(200, {"Error": {"message": "crc mismatch"}}),
        ])
        with self.assertRaises(BMCServerError) as cm:
            monitor.watch()
        self.assertIn("crc mismatch", str(cm.exception))
        self.assertEqual(cm.exception.payload, {"message": "crc mismatch"})
        self.assertEqual(monitor.state, TransferState.ERROR)

        # No transition leaves a terminal state
        monitor.apply_status({"Done": None})
        self.assertEqual(monitor.state, TransferState.ERROR)

    def test_too_many_consecutive_errors(self):
        client, monitor = self._monitor([refused() for _ in range(21)])
        with self.assertRaises(BMCConnectionError) as cm:
            monitor.watch()
        self.assertIn("too many consecutive errors (20)", str(cm.exception))
        self.assertEqual(monitor.state, TransferState.ERROR)
        self.assertEqual(len(client.sent), 20)

    def test_nineteen_errors_then_success_resets_counter(self):
        script = [refused() for _ in range(19)] + [transferring(HANDLE, 10 * MIB)]
        script += [refused() for _ in range(19)] + [done()]
        _, monitor = self._monitor(script)

        self.assertEqual(monitor.watch(), TransferState.DONE)
        self.assertEqual(monitor.consecutive_errors, 0)
        self.assertEqual(self.reporter.events.count(("resumed", 19)), 2)

    def test_backoff_is_capped(self):
        _, monitor = self._monitor([refused() for _ in range(19)] + [done()])
        monitor.watch()
        # initial delay, then (tick, backoff) per error, then the final tick
        backoffs = self.clock.sleeps[2:-1:2]
        self.assertEqual(backoffs, [min(n // 2, 10) for n in range(1, 20)])

    def test_decode_and_status_failures_count_as_errors(self):
        _, monitor = self._monitor([
            FakeResponse(200, text="<html>"),
            FakeResponse(503, text="busy"),
            FakeResponse(200, ["not", "a", "dict"]),
            done(),
        ])
        monitor.watch()
        self.assertEqual(
            [e for e in self.reporter.events if isinstance(e, tuple)],
            [("error", 1), ("error", 2), ("error", 3), ("resumed", 3)],
        )

    def test_repeated_errors_are_reported_sparsely(self):
        _, monitor = self._monitor([refused() for _ in range(7)] + [done()])
        monitor.watch()
        errors = [e[1] for e in self.reporter.events if isinstance(e, tuple) and e[0] == "error"]
        self.assertEqual(errors, [1, 6])

    def test_deadline_expiry_aborts(self):
        # Every poll takes ten seconds and never finishes
        client = ScriptedClient([transferring(HANDLE, 1)] * 100, clock=self.clock, advance=10)
        monitor = ProgressMonitor(client, HANDLE, 100, reporter=self.reporter, clock=self.clock)

        with self.assertRaises(TransferTimeout):
            monitor.watch(Deadline(60, self.clock))
        self.assertEqual(monitor.state, TransferState.CANCELLED)
        self.assertLess(len(client.sent), 10)

    def test_cancellation_stops_polling(self):
        deadline = Deadline(3600, self.clock)

        def cancel_then_progress(req):
            deadline.cancel()
            return transferring(HANDLE, 1)

        client = ScriptedClient([cancel_then_progress], clock=self.clock)
        monitor = ProgressMonitor(client, HANDLE, 100, reporter=self.reporter, clock=self.clock)

        with self.assertRaises(TransferCancelled):
            monitor.watch(deadline)
        self.assertEqual(len(client.sent), 1)
        self.assertEqual(monitor.state, TransferState.CANCELLED)

    def test_watch_transfer_helper(self):
        client = ScriptedClient([transferring(HANDLE, 5), done()])
        state = watch_transfer(client, HANDLE, 10, reporter=self.reporter, clock=self.clock)
        self.assertEqual(state, TransferState.DONE)


if __name__ == '__main__':
    unittest.main()
