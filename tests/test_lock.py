import os
import pathlib
import sys
import tempfile
import unittest


ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from os_updates_exporter.errors import LockBusy, LockError
from os_updates_exporter.lock import acquire_lock


class LockTests(unittest.TestCase):
    def test_second_acquire_is_busy(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "run.lock"
            first = acquire_lock(path)
            try:
                with self.assertRaises(LockBusy):
                    acquire_lock(path)
            finally:
                first.release()

    def test_release_allows_reacquire(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "run.lock"
            with acquire_lock(path) as held:
                self.assertTrue(held.held)
            self.assertFalse(held.held)
            second = acquire_lock(path)
            second.release()
            second.release()

    def test_records_pid(self):
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "sub" / "run.lock"
            with acquire_lock(path):
                self.assertEqual(path.read_text(encoding="utf-8").strip(), str(os.getpid()))

    def test_unopenable_path(self):
        with tempfile.TemporaryDirectory() as td:
            blocker = pathlib.Path(td) / "file"
            blocker.write_text("x", encoding="utf-8")
            with self.assertRaises(LockError) as ctx:
                acquire_lock(blocker / "run.lock")
            self.assertNotIsInstance(ctx.exception, LockBusy)


if __name__ == "__main__":
    unittest.main()
