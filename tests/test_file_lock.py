import json
import os
import subprocess
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path


class TestFileLock(unittest.TestCase):
    def _write_owner(self, path: Path, **fields) -> None:
        import socket

        doc = {"v": 1, "pid": os.getpid(), "host": socket.gethostname(), "token": "foreign"}
        doc.update(fields)
        path.write_text(json.dumps(doc), encoding="utf-8")

    def test_acquire_and_release(self) -> None:
        from claude_shim.util.file_lock import acquire_lock, release_lock

        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "sub" / "x.lock"
            h = acquire_lock(lock, timeout_s=1.0)
            self.assertTrue(lock.exists())
            doc = json.loads(lock.read_text(encoding="utf-8"))
            self.assertEqual(doc["pid"], os.getpid())
            self.assertEqual(doc["token"], h.owner.token)
            self.assertTrue(doc["acquired_at"])

            release_lock(h)
            self.assertFalse(lock.exists())

    def test_live_holder_times_out(self) -> None:
        from claude_shim.util.file_lock import LockUnavailableError, acquire_lock

        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "x.lock"
            self._write_owner(lock)
            t0 = time.monotonic()
            with self.assertRaises(LockUnavailableError):
                acquire_lock(lock, timeout_s=0.2, stale_after_s=60.0, poll_s=0.01)
            self.assertLess(time.monotonic() - t0, 5.0)
            self.assertEqual(json.loads(lock.read_text(encoding="utf-8"))["token"], "foreign")

    def test_dead_holder_is_reclaimed(self) -> None:
        from claude_shim.util.file_lock import acquire_lock

        p = subprocess.Popen([sys.executable, "-c", "pass"])
        p.wait()
        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "x.lock"
            self._write_owner(lock, pid=p.pid)
            h = acquire_lock(lock, timeout_s=2.0, stale_after_s=600.0)
            self.assertNotEqual(h.owner.token, "foreign")
            self.assertEqual(json.loads(lock.read_text(encoding="utf-8"))["token"], h.owner.token)

    def test_old_lock_is_reclaimed(self) -> None:
        from claude_shim.util.file_lock import acquire_lock

        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "x.lock"
            self._write_owner(lock, acquired_at="2000-01-01T00:00:00Z")
            h = acquire_lock(lock, timeout_s=2.0, stale_after_s=30.0)
            self.assertEqual(json.loads(lock.read_text(encoding="utf-8"))["token"], h.owner.token)

    def test_other_host_is_only_reclaimed_by_age(self) -> None:
        from claude_shim.util.file_lock import LockUnavailableError, acquire_lock

        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "x.lock"
            # Liveness of a pid on another host cannot be judged here.
            self._write_owner(lock, pid=999999, host="some-other-host")
            with self.assertRaises(LockUnavailableError):
                acquire_lock(lock, timeout_s=0.2, stale_after_s=600.0, poll_s=0.01)

    def test_unreadable_lock_is_reclaimed_once_old(self) -> None:
        from claude_shim.util.file_lock import LockUnavailableError, acquire_lock

        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "x.lock"
            lock.write_text("{not json", encoding="utf-8")
            with self.assertRaises(LockUnavailableError):
                acquire_lock(lock, timeout_s=0.2, stale_after_s=60.0, poll_s=0.01)

            old = time.time() - 3600
            os.utime(lock, (old, old))
            h = acquire_lock(lock, timeout_s=2.0, stale_after_s=60.0)
            self.assertEqual(json.loads(lock.read_text(encoding="utf-8"))["token"], h.owner.token)

    def test_lock_without_timestamp_ages_by_mtime(self) -> None:
        import socket

        from claude_shim.util.file_lock import LockUnavailableError, acquire_lock

        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "x.lock"
            # Another host, so only age can make it stale; no acquired_at field at all.
            doc = {"pid": 999999, "host": "some-other-host", "token": "foreign"}
            self.assertNotEqual(doc["host"], socket.gethostname())
            lock.write_text(json.dumps(doc), encoding="utf-8")
            with self.assertRaises(LockUnavailableError):
                acquire_lock(lock, timeout_s=0.2, stale_after_s=60.0, poll_s=0.01)

            old = time.time() - 3600
            os.utime(lock, (old, old))
            h = acquire_lock(lock, timeout_s=2.0, stale_after_s=60.0)
            self.assertEqual(json.loads(lock.read_text(encoding="utf-8"))["token"], h.owner.token)
            self.assertTrue(h.owner.acquired_at)

    def test_release_leaves_foreign_lock(self) -> None:
        from claude_shim.util.file_lock import acquire_lock, release_lock

        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "x.lock"
            h = acquire_lock(lock, timeout_s=1.0)
            self._write_owner(lock, token="someone-else")
            release_lock(h)
            self.assertTrue(lock.exists())

    def test_best_effort_yields_none_on_timeout(self) -> None:
        from claude_shim.util.file_lock import best_effort_lock

        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "x.lock"
            self._write_owner(lock)
            with self.assertLogs("claude_shim.lock", level="WARNING"):
                with best_effort_lock(lock, timeout_s=0.1, poll_s=0.01) as h:
                    self.assertIsNone(h)
            self.assertTrue(lock.exists())

            lock.unlink()
            with best_effort_lock(lock, timeout_s=1.0) as h2:
                self.assertIsNotNone(h2)
                self.assertTrue(lock.exists())
            self.assertFalse(lock.exists())

    def test_mutual_exclusion_across_threads(self) -> None:
        from claude_shim.util.file_lock import acquire_lock, release_lock

        with tempfile.TemporaryDirectory() as td:
            lock = Path(td) / "x.lock"
            inside = []
            overlaps = []
            errors = []
            guard = threading.Lock()

            def worker() -> None:
                try:
                    for _ in range(5):
                        h = acquire_lock(lock, timeout_s=20.0, poll_s=0.005, max_poll_s=0.02)
                        with guard:
                            inside.append(1)
                            if len(inside) > 1:
                                overlaps.append(len(inside))
                        time.sleep(0.002)
                        with guard:
                            inside.pop()
                        release_lock(h)
                except Exception as e:
                    errors.append(e)

            threads = [threading.Thread(target=worker) for _ in range(6)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            self.assertEqual(errors, [])
            self.assertEqual(overlaps, [])
            self.assertFalse(lock.exists())


if __name__ == "__main__":
    unittest.main()
