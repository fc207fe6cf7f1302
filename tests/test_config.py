import datetime as dt
import pathlib
import sys
import tempfile
import unittest


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from os_updates_exporter.config import (
    ExporterConfig,
    in_maintenance_window,
    parse_duration,
    parse_hhmm,
)
from os_updates_exporter.errors import ConfigError


def _missing_env_file() -> pathlib.Path:
    return pathlib.Path(tempfile.gettempdir()) / "os-updates-exporter-absent.env"


class ParseTests(unittest.TestCase):
    def test_durations(self):
        self.assertEqual(parse_duration("5s"), 5.0)
        self.assertEqual(parse_duration("1m30s"), 90.0)
        self.assertEqual(parse_duration("500ms"), 0.5)
        self.assertEqual(parse_duration("1h"), 3600.0)
        self.assertEqual(parse_duration("12"), 12.0)
        self.assertIsNone(parse_duration("five"))
        self.assertIsNone(parse_duration("5x"))
        self.assertIsNone(parse_duration(""))

    def test_hhmm(self):
        self.assertEqual(parse_hhmm("2200"), 2200)
        self.assertEqual(parse_hhmm("06:30"), 630)
        self.assertEqual(parse_hhmm("2460"), -1)
        self.assertEqual(parse_hhmm("9am"), -1)


class MaintenanceWindowTests(unittest.TestCase):
    def test_wraparound(self):
        self.assertTrue(in_maintenance_window(2200, 600, 2300))
        self.assertTrue(in_maintenance_window(2200, 600, 500))
        self.assertFalse(in_maintenance_window(2200, 600, 1200))

    def test_equal_bounds_always_inside(self):
        self.assertTrue(in_maintenance_window(300, 300, 1500))

    def test_plain_range(self):
        self.assertTrue(in_maintenance_window(100, 300, 200))
        self.assertFalse(in_maintenance_window(100, 300, 400))

    def test_invalid_bounds(self):
        self.assertFalse(in_maintenance_window(-1, 300, 200))

    def test_config_window_uses_local_time(self):
        cfg = ExporterConfig.from_env(
            {"TEXTFILE_DIR": "/tmp/x", "MW_START": "22:00", "MW_END": "06:00"},
            env_file=_missing_env_file(),
        )
        self.assertTrue(cfg.in_maintenance_window(dt.datetime(2024, 1, 1, 23, 0)))
        self.assertFalse(cfg.in_maintenance_window(dt.datetime(2024, 1, 1, 12, 0)))

    def test_unset_window_is_outside(self):
        cfg = ExporterConfig.from_env({"TEXTFILE_DIR": "/tmp/x"}, env_file=_missing_env_file())
        self.assertFalse(cfg.in_maintenance_window(dt.datetime(2024, 1, 1, 23, 0)))


class FromEnvTests(unittest.TestCase):
    def test_defaults(self):
        cfg = ExporterConfig.from_env({"TEXTFILE_DIR": "/tmp/textfiles"}, env_file=_missing_env_file())
        self.assertEqual(cfg.textfile_path, pathlib.Path("/tmp/textfiles/os_updates.prom"))
        self.assertEqual(cfg.patch_threshold, 3)
        self.assertEqual(cfg.repo_head_timeout_sec, 5.0)
        self.assertEqual(cfg.pkgmgr_timeout_sec, 90.0)
        self.assertTrue(cfg.fail_open)
        self.assertTrue(cfg.checksum_required)
        self.assertFalse(cfg.offline_mode)
        self.assertEqual(cfg.update_channel, "latest")
        self.assertEqual(cfg.file_mode, 0o640)

    def test_unparseable_values_fall_back(self):
        cfg = ExporterConfig.from_env(
            {
                "TEXTFILE_DIR": "/tmp/x",
                "PATCH_THRESHOLD": "many",
                "REPO_HEAD_TIMEOUT": "soon",
                "FAIL_OPEN": "maybe",
            },
            env_file=_missing_env_file(),
        )
        self.assertEqual(cfg.patch_threshold, 3)
        self.assertEqual(cfg.repo_head_timeout_sec, 5.0)
        self.assertTrue(cfg.fail_open)

    def test_empty_textfile_dir_rejected(self):
        with self.assertRaises(ConfigError):
            ExporterConfig.from_env({"TEXTFILE_DIR": "  "}, env_file=_missing_env_file())

    def test_env_file_merged_environment_wins(self):
        with tempfile.TemporaryDirectory() as td:
            env_file = pathlib.Path(td) / "exporter.env"
            env_file.write_text(
                "# comment\nexport TEXTFILE_DIR=/from/file\nPATCH_THRESHOLD='9'\nOFFLINE_MODE=1\n",
                encoding="utf-8",
            )
            cfg = ExporterConfig.from_env({"PATCH_THRESHOLD": "4"}, env_file=env_file)
        self.assertEqual(cfg.textfile_dir, pathlib.Path("/from/file"))
        self.assertEqual(cfg.patch_threshold, 4)
        self.assertTrue(cfg.offline_mode)


if __name__ == "__main__":
    unittest.main()
