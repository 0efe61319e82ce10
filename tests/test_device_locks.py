import sys
import tempfile
import threading
import time
import unittest
from collections import Counter
from contextlib import contextmanager
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from fakes import FakeOpener, FakeRouterOS  # noqa: E402

from fleetsync.common.engine import DeviceLocks, SyncEngine  # noqa: E402
from fleetsync.common.versioning import ConfigVersionStore  # noqa: E402
from fleetsync.core.errors import NotFoundError  # noqa: E402
from fleetsync.core.models import Dialect  # noqa: E402
from fleetsync.core.repository import InMemoryRepository  # noqa: E402


class TrackingOpener:
    """Session opener that holds each session open and records overlap."""

    def __init__(self, sessions: dict[str, FakeRouterOS], hold: float = 0.1, barrier: threading.Barrier | None = None):
        self.sessions = sessions
        self.hold = hold
        self.barrier = barrier
        self._lock = threading.Lock()
        self.active: Counter[str] = Counter()
        self.peak: Counter[str] = Counter()
        self.open_total = 0
        self.peak_total = 0

    def __call__(self, target, timeouts, logger):
        return self._open(target)

    @contextmanager
    def _open(self, target):
        with self._lock:
            self.active[target.host] += 1
            self.open_total += 1
            self.peak[target.host] = max(self.peak[target.host], self.active[target.host])
            self.peak_total = max(self.peak_total, self.open_total)
        try:
            if self.barrier is not None:
                self.barrier.wait()
            else:
                time.sleep(self.hold)
            yield self.sessions[target.host]
        finally:
            with self._lock:
                self.active[target.host] -= 1
                self.open_total -= 1


def _run_concurrently(*calls) -> list[BaseException]:
    errors: list[BaseException] = []

    def runner(call) -> None:
        try:
            call()
        except BaseException as exc:  # collected for the assertion in the test thread
            errors.append(exc)

    threads = [threading.Thread(target=runner, args=(call,)) for call in calls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)
    return errors


class DeviceLocksTests(unittest.TestCase):
    def test_same_key_is_exclusive(self) -> None:
        locks = DeviceLocks()
        inside = threading.Event()
        released = threading.Event()
        order: list[str] = []

        def first() -> None:
            with locks.hold("192.0.2.1"):
                inside.set()
                released.wait(2)
                order.append("first")

        def second() -> None:
            inside.wait(2)
            with locks.hold("192.0.2.1"):
                order.append("second")

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for thread in threads:
            thread.start()
        inside.wait(2)
        time.sleep(0.05)
        self.assertEqual([], order)
        released.set()
        for thread in threads:
            thread.join(2)

        self.assertEqual(["first", "second"], order)


class EngineSerializationTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.repository = InMemoryRepository()
        self.credential = self.repository.add_credential("admin", "secret")
        self.store = ConfigVersionStore(Path(self._tmpdir.name), self.repository)
        self.routers = {"192.0.2.1": FakeRouterOS(name="rtr-a"), "192.0.2.2": FakeRouterOS(name="rtr-b")}
        self.engine = SyncEngine(self.repository, self.store, session_opener=FakeOpener(self.routers["192.0.2.1"]))
        self.device_a = self.engine.add_device("192.0.2.1", self.credential.id, None, Dialect.ROUTEROS)
        self.engine._open_session = FakeOpener(self.routers["192.0.2.2"])
        self.device_b = self.engine.add_device("192.0.2.2", self.credential.id, None, Dialect.ROUTEROS)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def test_backups_of_one_device_never_overlap(self) -> None:
        opener = TrackingOpener(self.routers)
        self.engine._open_session = opener

        errors = _run_concurrently(
            lambda: self.engine.run_backup(self.device_a.id),
            lambda: self.engine.run_backup(self.device_a.id),
        )

        self.assertEqual([], errors)
        self.assertEqual(1, opener.peak["192.0.2.1"])
        self.assertEqual(3, len(self.engine.list_snapshots(self.device_a.id)))

    def test_backups_of_different_devices_overlap(self) -> None:
        opener = TrackingOpener(self.routers, barrier=threading.Barrier(2, timeout=5))
        self.engine._open_session = opener

        errors = _run_concurrently(
            lambda: self.engine.run_backup(self.device_a.id),
            lambda: self.engine.run_backup(self.device_b.id),
        )

        self.assertEqual([], errors)
        self.assertEqual(2, opener.peak_total)

    def test_concurrent_removal_sends_one_remote_command(self) -> None:
        limiter = self.engine.list_limiters(self.device_a.id)[0]
        self.engine._open_session = TrackingOpener(self.routers)

        errors = _run_concurrently(
            lambda: self.engine.remove_limiter(self.device_a.id, limiter.id),
            lambda: self.engine.remove_limiter(self.device_a.id, limiter.id),
        )

        self.assertEqual(1, len(errors))
        self.assertIsInstance(errors[0], NotFoundError)
        removals = [command for command in self.routers["192.0.2.1"].commands if command.startswith("/queue simple remove")]
        self.assertEqual(1, len(removals))


if __name__ == "__main__":
    unittest.main()
