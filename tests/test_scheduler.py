import json
import sys
import tempfile
import threading
import unittest
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from fakes import PORTS_COMMAND, FakeOpener, FakeRouterOS, FakeSwitch  # noqa: E402

from fleetsync.common.engine import SyncEngine  # noqa: E402
from fleetsync.common.scheduler import BackupScheduler, PeriodicLoop, UpgradeScheduler  # noqa: E402
from fleetsync.common.versioning import ConfigVersionStore  # noqa: E402
from fleetsync.core.errors import CommandError  # noqa: E402
from fleetsync.core.models import Dialect, UpgradeJob  # noqa: E402
from fleetsync.core.repository import InMemoryRepository  # noqa: E402


class PeriodicLoopTests(unittest.TestCase):
    def test_rejects_non_positive_interval(self) -> None:
        with self.assertRaises(ValueError):
            PeriodicLoop("bad", 0, lambda: None)

    def test_runs_task_until_stopped(self) -> None:
        ticks = threading.Event()
        calls: list[int] = []

        def task() -> None:
            calls.append(1)
            if len(calls) >= 2:
                ticks.set()

        loop = PeriodicLoop("test-loop", 0.01, task)
        loop.start()
        self.assertTrue(ticks.wait(2))
        loop.stop(timeout=2)

        self.assertFalse(loop.running)
        self.assertGreaterEqual(len(calls), 2)

    def test_task_failure_does_not_stop_loop(self) -> None:
        ticks = threading.Event()
        calls: list[int] = []

        def task() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("first run fails")
            ticks.set()

        loop = PeriodicLoop("flaky-loop", 0.01, task, run_immediately=True)
        loop.start()
        try:
            self.assertTrue(ticks.wait(2))
        finally:
            loop.stop(timeout=2)


class SchedulerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self._tmpdir.name)
        self.repository = InMemoryRepository()
        self.credential = self.repository.add_credential("admin", "secret")
        self.store = ConfigVersionStore(self.root / "archive", self.repository)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()


class BackupSchedulerTests(SchedulerTestCase):
    def test_sweep_backs_up_every_device_and_writes_summary(self) -> None:
        router = FakeRouterOS()
        engine = SyncEngine(self.repository, self.store, session_opener=FakeOpener(router))
        router_device = engine.add_device("192.0.2.1", self.credential.id, None, Dialect.ROUTEROS)
        engine._open_session = FakeOpener(FakeSwitch())
        switch_device = engine.add_device("192.0.2.2", self.credential.id, None, Dialect.SWITCH)

        switch = FakeSwitch()
        switch.interactive["show running-config"] = ""
        engine._open_session = FakeOpener(router, router, switch)
        router.responses[PORTS_COMMAND] = "ether1 - ether1\nether2 - WAN-UPLINK\nether3 - ether3\nether4 - ether4\n"

        summary = BackupScheduler(engine, summary_dir=self.root / "summary").run_once()

        self.assertEqual(
            {"devices_total": 2, "devices_success": 1, "devices_failed": 1, "snapshots_created": 1},
            summary["totals"],
        )
        by_id = {device["device_id"]: device for device in summary["devices"]}
        self.assertEqual(1, by_id[router_device.id]["tasks"]["ports"]["ports_created"])
        self.assertEqual("failed", by_id[switch_device.id]["status"])
        self.assertEqual(2, len(engine.list_snapshots(router_device.id)))

        saved = list((self.root / "summary").glob("run_*.json"))
        self.assertEqual(1, len(saved))
        self.assertEqual(summary["totals"], json.loads(saved[0].read_text(encoding="utf-8"))["totals"])

    def test_port_resync_failure_does_not_fail_device(self) -> None:
        router = FakeRouterOS()
        engine = SyncEngine(self.repository, self.store, session_opener=FakeOpener(router))
        engine.add_device("192.0.2.1", self.credential.id, None, Dialect.ROUTEROS)
        router.fail_on[":foreach"] = CommandError("script error")

        summary = BackupScheduler(engine).run_once()

        device = summary["devices"][0]
        self.assertEqual("success", device["status"])
        self.assertFalse(device["tasks"]["ports"]["performed"])


class UpgradeSchedulerTests(SchedulerTestCase):
    def test_runs_only_due_jobs(self) -> None:
        router = FakeRouterOS()
        engine = SyncEngine(self.repository, self.store, session_opener=FakeOpener(router))
        device = engine.add_device("192.0.2.1", self.credential.id, None, Dialect.ROUTEROS)
        image = self.root / "routeros-7.14.npk"
        image.write_bytes(b"npk")
        self.repository.add_job(UpgradeJob(device.id, str(image), scheduled_at=100.0))
        self.repository.add_job(UpgradeJob(device.id, str(image), scheduled_at=900.0))

        results = UpgradeScheduler(engine, clock=lambda: 500.0).run_once()

        self.assertEqual(["completed"], [job.status for job in results])
        self.assertEqual(1, len(router.uploads))
        self.assertEqual(1, len(self.repository.list_pending_jobs(1000.0)))


if __name__ == "__main__":
    unittest.main()
