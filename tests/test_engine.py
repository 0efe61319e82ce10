import sys
import tempfile
import unittest
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from fakes import PORTS_COMMAND, FakeOpener, FakeRouterOS, FakeSwitch  # noqa: E402

from fleetsync.common.engine import SyncEngine  # noqa: E402
from fleetsync.common.versioning import ConfigVersionStore  # noqa: E402
from fleetsync.core.errors import (  # noqa: E402
    AuthError,
    BackupError,
    CommandError,
    ConnectError,
    DuplicateError,
    NotFoundError,
    PersistenceError,
    UnsupportedOperationError,
)
from fleetsync.core.models import Dialect, PortStatus, PortUsage, UpgradeJob  # noqa: E402
from fleetsync.core.repository import InMemoryRepository  # noqa: E402


class PortWriteFailingRepository(InMemoryRepository):
    def add_ports(self, ports):
        raise PersistenceError("ports table locked")


class EngineTestCase(unittest.TestCase):
    repository_class = InMemoryRepository

    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.archive_dir = Path(self._tmpdir.name) / "archive"
        self.repository = self.repository_class()
        self.credential = self.repository.add_credential("admin", "secret")
        self.site = self.repository.add_site("north-pop")
        self.store = ConfigVersionStore(self.archive_dir, self.repository)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def engine_for(self, opener: FakeOpener) -> SyncEngine:
        return SyncEngine(self.repository, self.store, session_opener=opener)

    def add_router(self, session: FakeRouterOS | None = None, ip: str = "192.0.2.1"):
        session = session or FakeRouterOS()
        engine = self.engine_for(FakeOpener(session))
        device = engine.add_device(ip, self.credential.id, self.site.id, Dialect.ROUTEROS)
        return engine, session, device


class AddDeviceTests(EngineTestCase):
    def test_routeros_device_is_discovered_and_backed_up(self) -> None:
        engine, session, device = self.add_router()

        self.assertEqual("core-rtr", device.hostname)
        self.assertEqual("RB4011iGS+", device.chassis)
        self.assertEqual("D4A70C1B2E3F", device.serial)
        self.assertEqual("6.48.6", device.version)
        self.assertIsNotNone(device.model_id)

        ports = {port.physical_name: port.status for port in engine.list_ports(device.id)}
        self.assertEqual(
            {"ether1": PortStatus.FREE, "ether2": PortStatus.ASSIGNED, "ether3": PortStatus.FREE},
            ports,
        )
        limiters = engine.list_limiters(device.id)
        self.assertEqual(["CLIENTE-A", "CLIENTE-B"], [limiter.name for limiter in limiters])
        self.assertEqual("20M/20M", limiters[1].bandwidth_limit)

        snapshots = engine.list_snapshots(device.id)
        self.assertEqual(1, len(snapshots))
        self.assertTrue(snapshots[0].text_export_path.endswith(".rsc"))
        self.assertIsNotNone(snapshots[0].binary_blob_path)
        self.assertIsNone(snapshots[0].diff_path)

        self.assertEqual({}, session.files)
        self.assertEqual(1, session.close_calls)

    def test_switch_device_gets_text_export_only(self) -> None:
        session = FakeSwitch()
        engine = self.engine_for(FakeOpener(session))

        device = engine.add_device("192.0.2.2", self.credential.id, None, "switch")

        self.assertEqual("sw-core-01", device.hostname)
        self.assertEqual("WS-C3750X-48P", device.chassis)
        self.assertEqual("FDO1234X0YZ", device.serial)
        self.assertEqual("15.0(2)SE11", device.version)
        self.assertEqual([], engine.list_ports(device.id))
        snapshot = engine.list_snapshots(device.id)[0]
        self.assertTrue(snapshot.text_export_path.endswith(".cfg"))
        self.assertIsNone(snapshot.binary_blob_path)
        self.assertIn("hostname sw-core-01", Path(snapshot.text_export_path).read_text(encoding="utf-8"))

    def test_duplicate_ip_opens_no_second_session(self) -> None:
        opener = FakeOpener(FakeRouterOS())
        engine = self.engine_for(opener)
        engine.add_device("192.0.2.1", self.credential.id, self.site.id, Dialect.ROUTEROS)

        with self.assertRaises(DuplicateError):
            engine.add_device("192.0.2.1", self.credential.id, self.site.id, Dialect.ROUTEROS)

        self.assertEqual(1, len(opener.targets))
        self.assertEqual(1, len(self.repository.list_devices()))

    def test_missing_credential(self) -> None:
        opener = FakeOpener(FakeRouterOS())

        with self.assertRaises(NotFoundError):
            self.engine_for(opener).add_device("192.0.2.1", 99, None, Dialect.ROUTEROS)

        self.assertEqual([], opener.targets)

    def test_missing_site(self) -> None:
        with self.assertRaises(NotFoundError):
            self.engine_for(FakeOpener(FakeRouterOS())).add_device("192.0.2.1", self.credential.id, 99, "routeros")

    def test_authentication_failure_stores_nothing(self) -> None:
        opener = FakeOpener(error=AuthError("SSH authentication failed", device="192.0.2.1"))

        with self.assertRaises(AuthError):
            self.engine_for(opener).add_device("192.0.2.1", self.credential.id, None, Dialect.ROUTEROS)

        self.assertEqual([], self.repository.list_devices())

    def test_session_target_uses_credential(self) -> None:
        opener = FakeOpener(FakeRouterOS())

        self.engine_for(opener).add_device("192.0.2.1", self.credential.id, None, Dialect.ROUTEROS, port=2222)

        target = opener.targets[0]
        self.assertEqual(("192.0.2.1", 2222, "admin", "secret"), (target.host, target.port, target.username, target.password))

    def test_initial_backup_failure_keeps_device(self) -> None:
        session = FakeRouterOS()
        session.fail_on["/export"] = CommandError("export failed", command="/export")

        engine, _, device = self.add_router(session)

        self.assertIsNotNone(self.repository.get_device(device.id))
        self.assertEqual([], engine.list_snapshots(device.id))
        self.assertEqual(3, len(engine.list_ports(device.id)))


class InventoryFailureTests(EngineTestCase):
    repository_class = PortWriteFailingRepository

    def test_port_write_failure_does_not_abort_add(self) -> None:
        engine, _, device = self.add_router()

        self.assertEqual([], engine.list_ports(device.id))
        self.assertEqual(2, len(engine.list_limiters(device.id)))
        self.assertEqual(1, len(engine.list_snapshots(device.id)))


class RunBackupTests(EngineTestCase):
    def test_second_backup_records_diff(self) -> None:
        engine, session, device = self.add_router()
        session.export_text = "/interface bridge\nadd name=bridge2\n"

        snapshot = engine.run_backup(device.id)

        diff_text = self.store.read_diff(snapshot)
        self.assertIn("-add name=bridge1", diff_text)
        self.assertIn("+add name=bridge2", diff_text)
        self.assertEqual(2, len(engine.list_snapshots(device.id)))

    def test_unknown_device(self) -> None:
        engine = self.engine_for(FakeOpener(FakeRouterOS()))

        with self.assertRaises(NotFoundError):
            engine.run_backup(404)

    def test_command_failure_becomes_backup_error(self) -> None:
        engine, session, device = self.add_router()
        session.fail_on["/system backup save"] = CommandError("out of disk space")

        with self.assertRaises(BackupError):
            engine.run_backup(device.id)

        self.assertEqual(1, len(engine.list_snapshots(device.id)))
        self.assertEqual(2, session.close_calls)

    def test_unreachable_device_becomes_backup_error(self) -> None:
        engine, _, device = self.add_router()
        engine._open_session = FakeOpener(error=ConnectError("SSH connection failed"))

        with self.assertRaises(BackupError):
            engine.run_backup(device.id)


class ResyncPortsTests(EngineTestCase):
    def test_resync_skips_client_bound_ports(self) -> None:
        engine, session, device = self.add_router()
        ether2 = next(port for port in engine.list_ports(device.id) if port.physical_name == "ether2")
        engine.bind_port_to_client(ether2.id)
        session.responses[PORTS_COMMAND] = "ether1 - ether1\nether2 - ether2\nether3 - CLIENT-X\nether4 - ether4\n"

        result = engine.resync_ports(device.id)

        ports = {port.physical_name: port.status for port in engine.list_ports(device.id)}
        self.assertEqual(PortStatus.ASSIGNED_TO_CLIENT, ports["ether2"])
        self.assertEqual(PortStatus.ASSIGNED, ports["ether3"])
        self.assertEqual(PortStatus.FREE, ports["ether4"])
        self.assertEqual(1, result.client_bound)
        self.assertEqual(["ether4"], [port.physical_name for port in result.created])

    def test_release_port_returns_to_assigned(self) -> None:
        engine, _, device = self.add_router()
        ether2 = next(port for port in engine.list_ports(device.id) if port.physical_name == "ether2")
        engine.bind_port_to_client(ether2.id)

        self.assertEqual(PortStatus.ASSIGNED, engine.release_port(ether2.id).status)


class PortUsageTests(EngineTestCase):
    def test_client_bound_ports_count_as_in_use(self) -> None:
        engine, _, device = self.add_router()
        ether1 = next(port for port in engine.list_ports(device.id) if port.physical_name == "ether1")
        engine.bind_port_to_client(ether1.id)

        usage = engine.port_usage(device.id)

        self.assertEqual((3, 2, 1), (usage.total, usage.in_use, usage.free))
        self.assertAlmostEqual(200 / 3, usage.usage_percent)
        self.assertAlmostEqual(100 / 3, usage.free_percent)

    def test_device_without_ports_reports_zero_percent(self) -> None:
        usage = PortUsage.from_ports([])

        self.assertEqual((0, 0, 0), (usage.total, usage.in_use, usage.free))
        self.assertEqual(0.0, usage.usage_percent)
        self.assertEqual(0.0, usage.free_percent)

    def test_unknown_device(self) -> None:
        engine = self.engine_for(FakeOpener(FakeRouterOS()))

        with self.assertRaises(NotFoundError):
            engine.port_usage(999)


class LimiterTests(EngineTestCase):
    def test_add_limiter_runs_command_then_records(self) -> None:
        engine, session, device = self.add_router()

        record = engine.add_limiter(device.id, '"CLIENTE-C"', "5M/5M", "ether1")

        self.assertEqual("CLIENTE-C", record.name)
        self.assertIn(
            '/queue simple add max-limit=5M/5M name="CLIENTE-C" queue=hotspot-default/hotspot-default target=ether1',
            session.commands,
        )
        self.assertIn("CLIENTE-C", [limiter.name for limiter in engine.list_limiters(device.id)])

    def test_add_limiter_rejects_duplicate_name(self) -> None:
        engine, session, device = self.add_router()
        sent = len(session.commands)

        with self.assertRaises(DuplicateError):
            engine.add_limiter(device.id, "CLIENTE-A", "1M", "ether1")

        self.assertEqual(sent, len(session.commands))

    def test_failed_remote_command_records_nothing(self) -> None:
        engine, session, device = self.add_router()
        session.fail_on["/queue simple add"] = CommandError("invalid target")

        with self.assertRaises(CommandError):
            engine.add_limiter(device.id, "CLIENTE-C", "1M", "ether9")

        self.assertEqual(2, len(engine.list_limiters(device.id)))

    def test_remove_limiter(self) -> None:
        engine, session, device = self.add_router()
        limiter = engine.list_limiters(device.id)[0]

        engine.remove_limiter(device.id, limiter.id)

        self.assertIn('/queue simple remove [find name="CLIENTE-A"]', session.commands)
        self.assertEqual(["CLIENTE-B"], [row.name for row in engine.list_limiters(device.id)])

    def test_removing_twice_is_not_found(self) -> None:
        engine, session, device = self.add_router()
        limiter = engine.list_limiters(device.id)[0]
        engine.remove_limiter(device.id, limiter.id)

        with self.assertRaises(NotFoundError):
            engine.remove_limiter(device.id, limiter.id)

        removals = [command for command in session.commands if command.startswith("/queue simple remove")]
        self.assertEqual(1, len(removals))

    def test_switch_has_no_limiters(self) -> None:
        engine = self.engine_for(FakeOpener(FakeSwitch()))
        device = engine.add_device("192.0.2.2", self.credential.id, None, Dialect.SWITCH)

        with self.assertRaises(UnsupportedOperationError):
            engine.add_limiter(device.id, "CLIENTE-A", "1M", "Gi1/0/1")


class PushFirmwareTests(EngineTestCase):
    def test_uploads_image_and_completes_job(self) -> None:
        engine, session, device = self.add_router()
        image = Path(self._tmpdir.name) / "routeros-7.14.npk"
        image.write_bytes(b"npk")
        job = self.repository.add_job(UpgradeJob(device.id, str(image), scheduled_at=0.0))

        updated = engine.push_firmware(job)

        self.assertEqual("completed", updated.status)
        self.assertEqual([(image, "routeros-7.14.npk")], session.uploads)

    def test_missing_image_fails_job(self) -> None:
        engine, session, device = self.add_router()
        job = self.repository.add_job(UpgradeJob(device.id, "/nonexistent/image.npk", scheduled_at=0.0))

        self.assertEqual("failed", engine.push_firmware(job).status)
        self.assertEqual([], session.uploads)

    def test_unreachable_device_fails_job(self) -> None:
        engine, _, device = self.add_router()
        image = Path(self._tmpdir.name) / "routeros-7.14.npk"
        image.write_bytes(b"npk")
        job = self.repository.add_job(UpgradeJob(device.id, str(image), scheduled_at=0.0))
        engine._open_session = FakeOpener(error=ConnectError("SSH connection failed"))

        self.assertEqual("failed", engine.push_firmware(job).status)
        self.assertEqual([], self.repository.list_pending_jobs(1.0))


if __name__ == "__main__":
    unittest.main()
