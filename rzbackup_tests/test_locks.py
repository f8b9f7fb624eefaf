# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Unit tests for the per target lock files."""

from __future__ import (
    annotations,
)
import fcntl
import logging
import os
import unittest
from unittest.mock import (
    MagicMock,
    patch,
)

from rzbackup_main.errors import (
    ALREADY_RUNNING,
    BackupError,
)
from rzbackup_main.locks import (
    GUARD_SUFFIX,
    REAPER_LOCK_KEY,
    STALE_SUFFIX,
    LockManager,
    read_pid,
)
from rzbackup_tests.abstract_testcase import (
    AbstractTestCase,
)
from rzbackup_tests.tools import (
    read_file,
    write_file,
)

OTHER_PID = 4242


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestLockManager,
        TestLockListing,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestLockManager(AbstractTestCase):

    def setUp(self) -> None:
        self.tmpdir = self.make_tmpdir()
        self.log = MagicMock(spec=logging.Logger)
        self.locks = LockManager(os.path.join(self.tmpdir, "rzbackup"), self.log, time_fn=lambda: 1_700_000_000.0)

    def test_lock_file_name(self) -> None:
        self.assertEqual(os.path.join(self.tmpdir, "rzbackup.alpha.pid"), self.locks.lock_file_name("alpha"))
        self.assertEqual(os.path.join(self.tmpdir, "rzbackup.reaper.pid"), self.locks.lock_file_name(REAPER_LOCK_KEY))

    def test_acquire_and_release(self) -> None:
        path = self.locks.lock_file_name("alpha")
        self.locks.acquire("alpha")
        self.assertEqual(os.getpid(), read_pid(path))
        self.locks.release("alpha")
        self.assertFalse(os.path.exists(path))

    def test_locked_releases_on_error(self) -> None:
        path = self.locks.lock_file_name("alpha")
        with self.assertRaises(ValueError):
            with self.locks.locked("alpha"):
                self.assertTrue(os.path.exists(path))
                raise ValueError("sync blew up")
        self.assertFalse(os.path.exists(path))

    def test_acquire_is_denied_while_owner_lives(self) -> None:
        path = write_file(self.locks.lock_file_name("alpha"), f"{OTHER_PID}\n")
        with patch("rzbackup_main.locks.pid_exists", return_value=True), patch(
            "rzbackup_main.locks.process_command", return_value="/usr/bin/python3 /usr/bin/rzbackup backup daily"
        ):
            with self.assertRaises(BackupError) as cm:
                self.locks.acquire("alpha")
        self.assertEqual(ALREADY_RUNNING, cm.exception.code)
        self.assertEqual("alpha", cm.exception.target)
        self.assertEqual(OTHER_PID, read_pid(path))  # untouched
        self.assertFalse(os.path.exists(path + STALE_SUFFIX))

    def test_stale_lock_is_overridden_once_owner_is_gone(self) -> None:
        path = write_file(self.locks.lock_file_name("alpha"), f"{OTHER_PID}\n")
        with patch("rzbackup_main.locks.pid_exists", return_value=False):
            self.locks.acquire("alpha")
        self.assertEqual(os.getpid(), read_pid(path))
        marker = read_file(path + STALE_SUFFIX)
        self.assertTrue(marker.startswith(f"{OTHER_PID} "))
        self.log.warning.assert_called()

    def test_reused_pid_of_unrelated_program_is_stale(self) -> None:
        write_file(self.locks.lock_file_name("alpha"), f"{OTHER_PID}\n")
        with patch("rzbackup_main.locks.pid_exists", return_value=True), patch(
            "rzbackup_main.locks.process_command", return_value="/usr/sbin/sshd -D"
        ):
            self.locks.acquire("alpha")
        self.assertEqual(os.getpid(), read_pid(self.locks.lock_file_name("alpha")))

    def test_unknown_command_of_live_pid_is_treated_as_alive(self) -> None:
        with patch("rzbackup_main.locks.pid_exists", return_value=True), patch(
            "rzbackup_main.locks.process_command", return_value=None
        ):
            self.assertTrue(self.locks.is_owner_alive(OTHER_PID))

    def test_garbled_lock_file_is_stale(self) -> None:
        path = write_file(self.locks.lock_file_name("alpha"), "not-a-pid\n")
        self.locks.acquire("alpha")
        self.assertEqual(os.getpid(), read_pid(path))
        self.assertTrue(read_file(path + STALE_SUFFIX).startswith("None "))

    def hold_guard(self, key: str) -> int:
        """Takes the guard flock of ``key`` like a concurrent acquirer would; the caller closes the returned fd."""
        fd = os.open(self.locks.lock_file_name(key) + GUARD_SUFFIX, os.O_WRONLY | os.O_CREAT)
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        return fd

    def test_acquire_is_denied_while_another_process_is_acquiring(self) -> None:
        path = self.locks.lock_file_name("alpha")
        fd = self.hold_guard("alpha")
        try:
            with self.assertRaises(BackupError) as cm:
                self.locks.acquire("alpha")
            self.assertEqual(ALREADY_RUNNING, cm.exception.code)
            self.assertFalse(os.path.exists(path))
        finally:
            os.close(fd)
        self.locks.acquire("alpha")
        self.assertEqual(os.getpid(), read_pid(path))

    def test_stale_lock_is_not_overridden_while_another_process_is_acquiring(self) -> None:
        path = write_file(self.locks.lock_file_name("alpha"), f"{OTHER_PID}\n")
        fd = self.hold_guard("alpha")
        try:
            with patch("rzbackup_main.locks.pid_exists", return_value=False):
                with self.assertRaises(BackupError):
                    self.locks.acquire("alpha")
        finally:
            os.close(fd)
        self.assertEqual(OTHER_PID, read_pid(path))
        self.assertFalse(os.path.exists(path + STALE_SUFFIX))

    def test_guard_is_released_after_acquire(self) -> None:
        self.locks.acquire("alpha")
        os.close(self.hold_guard("alpha"))  # would raise BlockingIOError if the guard were still held

    def test_own_pid_is_alive(self) -> None:
        self.assertTrue(self.locks.is_owner_alive(os.getpid()))

    def test_release_of_missing_lock_only_warns(self) -> None:
        self.locks.release("never-acquired")
        self.log.warning.assert_called_once()

    def test_read_pid(self) -> None:
        self.assertIsNone(read_pid(os.path.join(self.tmpdir, "missing")))
        self.assertIsNone(read_pid(write_file(os.path.join(self.tmpdir, "empty"), "")))
        self.assertEqual(17, read_pid(write_file(os.path.join(self.tmpdir, "ok"), " 17\n")))


#############################################################################
class TestLockListing(AbstractTestCase):

    def test_list_locks_and_stale_markers(self) -> None:
        tmpdir = self.make_tmpdir()
        now = 1_700_000_000.0
        locks = LockManager(os.path.join(tmpdir, "rzbackup"), MagicMock(spec=logging.Logger), time_fn=lambda: now)
        write_file(locks.lock_file_name("alpha"), f"{os.getpid()}\n", mtime=now - 100)
        write_file(locks.lock_file_name("beta"), f"{OTHER_PID}\n", mtime=now - 10)
        write_file(locks.lock_file_name("gamma") + STALE_SUFFIX, f"{OTHER_PID} 20231114221320\n", mtime=now - 5)
        write_file(os.path.join(tmpdir, "unrelated.pid"), "1\n")
        with patch("rzbackup_main.locks.pid_exists", return_value=False):
            infos = locks.list_locks()
        self.assertEqual(["alpha", "beta"], [info.key for info in infos])
        self.assertTrue(infos[0].alive)
        self.assertEqual(100, round(infos[0].age_secs))
        self.assertFalse(infos[1].alive)
        self.assertEqual(OTHER_PID, infos[1].pid)
        markers = locks.list_stale_markers()
        self.assertEqual(["gamma"], [marker.key for marker in markers])
        self.assertEqual(f"{OTHER_PID} 20231114221320", markers[0].content)
        self.assertEqual(5, round(markers[0].age_secs))

    def test_listing_of_missing_lock_dir_is_empty(self) -> None:
        locks = LockManager("/nonexistent/dir/rzbackup", MagicMock(spec=logging.Logger))
        self.assertEqual([], locks.list_locks())
        self.assertEqual([], locks.list_stale_markers())
