import datetime
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import windows_health_report as whr
from windows_health_report import RunStateStore, describe_last_run, rotate_logs, rotated_log_name


class RunStateStoreTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        root = Path(self._tmp.name)
        self.store = RunStateStore(root / "state" / "snapshot.json", root / "state" / "last_run.txt")

    def test_missing_state_loads_empty(self):
        self.assertEqual(self.store.load(), {})
        self.assertIsNone(self.store.load_last_run())

    def test_snapshot_round_trip(self):
        snapshot = {"100-X": 3, "7-Microsoft-Windows-Kernel-Power": 0, "41-disk": 12}
        self.store.save(snapshot)
        self.assertEqual(self.store.load(), snapshot)
        self.assertFalse(self.store.snapshot_path.with_name("snapshot.json.tmp").exists())

    def test_save_overwrites_previous_snapshot(self):
        self.store.save({"1-A": 1, "2-B": 2})
        self.store.save({"3-C": 3})
        self.assertEqual(self.store.load(), {"3-C": 3})

    def test_corrupt_snapshot_resets_to_empty(self):
        self.store.snapshot_path.parent.mkdir(parents=True)
        for content in ("{not json", "[1, 2, 3]", '{"1-A": "three"}', '{"1-A": true}'):
            self.store.snapshot_path.write_text(content, encoding="utf-8")
            with self.assertLogs("windows_health_report", level="WARNING"):
                self.assertEqual(self.store.load(), {})

    def test_last_run_round_trip(self):
        when = datetime.datetime(2024, 5, 1, 13, 45, 10)
        self.store.save_last_run(when)
        self.assertEqual(self.store.load_last_run(), when)

    def test_last_run_with_utc_offset_becomes_local_naive_time(self):
        self.store.last_run_path.parent.mkdir(parents=True)
        self.store.last_run_path.write_text("2024-05-01T10:00:00+00:00", encoding="utf-8")
        loaded = self.store.load_last_run()
        self.assertIsNone(loaded.tzinfo)
        expected = datetime.datetime(2024, 5, 1, 10, 0, tzinfo=datetime.timezone.utc).astimezone()
        self.assertEqual(loaded, expected.replace(tzinfo=None))
        self.assertIsInstance(describe_last_run(loaded, datetime.datetime.now()), str)

    def test_failed_write_leaves_no_temp_file(self):
        self.store.save({"1-A": 1})
        with mock.patch.object(whr.os, "replace", side_effect=OSError("locked")):
            with self.assertRaises(OSError):
                self.store.save({"1-A": 2})
        self.assertEqual([p.name for p in self.store.snapshot_path.parent.iterdir()], ["snapshot.json"])
        self.assertEqual(self.store.load(), {"1-A": 1})

    def test_garbage_last_run_is_unknown(self):
        self.store.last_run_path.parent.mkdir(parents=True)
        self.store.last_run_path.write_text("yesterday-ish", encoding="utf-8")
        with self.assertLogs("windows_health_report", level="WARNING"):
            self.assertIsNone(self.store.load_last_run())


class DescribeLastRunTests(unittest.TestCase):
    NOW = datetime.datetime(2024, 5, 1, 12, 0, 0)

    def _ago(self, **kwargs):
        return describe_last_run(self.NOW - datetime.timedelta(**kwargs), self.NOW)

    def test_buckets(self):
        self.assertEqual(describe_last_run(None, self.NOW), "Unknown")
        self.assertEqual(self._ago(seconds=30), "just now")
        self.assertEqual(self._ago(minutes=5, seconds=59), "5 minutes ago")
        self.assertEqual(self._ago(minutes=59), "59 minutes ago")
        self.assertEqual(self._ago(hours=1), "1 hours and 0 minutes ago")
        self.assertEqual(self._ago(hours=26, minutes=7), "26 hours and 7 minutes ago")

    def test_future_timestamp_is_just_now(self):
        self.assertEqual(self._ago(minutes=-10), "just now")


class RotateLogsTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.base = Path(self._tmp.name) / "HealthReport.log"

    def _write(self, path, text):
        path.write_text(text, encoding="utf-8")

    def test_rotated_name(self):
        self.assertEqual(rotated_log_name(self.base, 2).name, "HealthReport-2.log")

    def test_shifts_existing_logs(self):
        self._write(self.base, "current")
        self._write(rotated_log_name(self.base, 1), "one")
        rotate_logs(self.base, 3)
        self.assertFalse(self.base.exists())
        self.assertEqual(rotated_log_name(self.base, 1).read_text(encoding="utf-8"), "current")
        self.assertEqual(rotated_log_name(self.base, 2).read_text(encoding="utf-8"), "one")

    def test_oldest_beyond_max_is_discarded(self):
        self._write(self.base, "current")
        self._write(rotated_log_name(self.base, 1), "one")
        self._write(rotated_log_name(self.base, 2), "two")
        rotate_logs(self.base, 2)
        self.assertEqual(rotated_log_name(self.base, 1).read_text(encoding="utf-8"), "current")
        self.assertEqual(rotated_log_name(self.base, 2).read_text(encoding="utf-8"), "one")
        self.assertFalse(rotated_log_name(self.base, 3).exists())

    def test_nothing_to_rotate(self):
        rotate_logs(self.base, 3)
        self.assertEqual(list(self.base.parent.iterdir()), [])

    def test_zero_max_files_discards_current_log(self):
        self._write(self.base, "current")
        self._write(rotated_log_name(self.base, 1), "one")
        rotate_logs(self.base, 0)
        self.assertFalse(self.base.exists())
        self.assertEqual(rotated_log_name(self.base, 1).read_text(encoding="utf-8"), "one")
        self.assertFalse(rotated_log_name(self.base, 2).exists())


if __name__ == "__main__":
    unittest.main()
