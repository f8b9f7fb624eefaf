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
"""Unit tests for the Job orchestration of the backup, reap and report subcommands."""

from __future__ import (
    annotations,
)
import logging
import os
import subprocess
import unittest
from typing import (
    Any,
)
from unittest.mock import (
    MagicMock,
    patch,
)

from rzbackup_main import (
    rzbackup,
)
from rzbackup_main.errors import (
    INVALID_TARGET,
    BackupError,
)
from rzbackup_main.report import (
    SPACE,
    ReportDocument,
    Severity,
)
from rzbackup_main.util.utils import (
    DIE_STATUS,
    STILL_RUNNING_STATUS,
    WARNING_STATUS,
)
from rzbackup_tests.abstract_testcase import (
    AbstractTestCase,
)
from rzbackup_tests.tools import (
    read_file,
    write_file,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestBackup,
        TestReapAndReport,
        TestMain,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class FakeHosts:
    """Simulates ssh and rsync against a set of source hosts."""

    def __init__(self) -> None:
        self.unreachable: set[str] = set()
        self.failing: set[str] = set()
        self.commands: list[list[str]] = []
        self.version = "v1"

    def run(self, cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
        self.commands.append(cmd)
        if cmd[0] == "ssh":
            host = cmd[-2].partition("@")[2]
            if host in self.unreachable:
                return subprocess.CompletedProcess(cmd, 255, stdout="", stderr="ssh: connect to host: No route to host")
            return subprocess.CompletedProcess(cmd, 0, stdout="Sun Jan  1 00:00:00 UTC 2023\n", stderr="")
        assert cmd[0] == "rsync", cmd
        host = cmd[-2].partition("@")[2].partition(":")[0]
        dst = cmd[-1]
        file = os.path.join(dst, "version")
        if os.path.exists(file):
            os.remove(file)
        write_file(file, f"{host} {self.version}")
        if host in self.failing:
            kwargs["stderr"].write("rsync error: error in rsync protocol data stream (code 12)\n")
            return subprocess.CompletedProcess(cmd, 12)
        kwargs["stdout"].write("sending incremental file list\n")
        return subprocess.CompletedProcess(cmd, 0)

    def rsync_hosts(self) -> list[str]:
        return [cmd[-2].partition("@")[2].partition(":")[0] for cmd in self.commands if cmd[0] == "rsync"]


#############################################################################
class JobTestCase(AbstractTestCase):

    def setUp(self) -> None:
        self.tmpdir = self.make_tmpdir()
        self.dst_dir = os.path.join(self.tmpdir, "backup")
        self.targets_file = write_file(os.path.join(self.tmpdir, "targets"), "# hosts\nalpha\nbeta /etc\n")
        self.hosts = FakeHosts()
        self.log = MagicMock(spec=logging.Logger)

    def run_job(self, cli: list[str], **settings: str) -> None:
        settings = {
            "BACKUP_BACKEND": "hardlink",
            "BACKUP_DST_DIR": self.dst_dir,
            "BACKUP_TARGETS_FILE": self.targets_file,
            "BACKUP_EXCLUDES_FILE": os.path.join(self.tmpdir, "excludes"),
            **settings,
        }
        defaults_file = self.write_defaults_file(self.tmpdir, **settings)
        args = self.argparser_parse_args(["--defaults-file", defaults_file] + cli)
        job = rzbackup.Job()
        job.is_test_mode = True
        with patch("rzbackup_main.transport.subprocess_run", side_effect=self.hosts.run):
            job.run_main(args, ["rzbackup"] + cli, self.log)

    def version(self, host: str, slot: str) -> str:
        return read_file(os.path.join(self.dst_dir, host, slot, "version"))


#############################################################################
class TestBackup(JobTestCase):

    def test_backup_all_targets(self) -> None:
        self.run_job(["backup", "daily"])
        self.assertEqual(["alpha", "beta"], self.hosts.rsync_hosts())
        self.assertEqual("alpha v1", self.version("alpha", "daily.0"))
        self.assertEqual("beta v1", self.version("beta", "daily.0"))
        self.assertTrue(os.path.isfile(os.path.join(self.dst_dir, "alpha", "daily-cmd.txt")))
        self.assertTrue(os.path.isfile(os.path.join(self.dst_dir, "alpha", "daily.0", "backup-log.txt")))
        self.assertFalse(any(name.endswith(".pid") for name in os.listdir(self.tmpdir)))
        self.log.info.assert_any_call("Success. Goodbye!")

    def test_probe_happens_before_sync(self) -> None:
        self.run_job(["backup", "daily", "alpha"])
        self.assertEqual(["ssh", "rsync"], [cmd[0] for cmd in self.hosts.commands])
        rsync_cmd = self.hosts.commands[1]
        self.assertIn("bup@alpha:/", rsync_cmd)

    def test_backup_rotates_generations(self) -> None:
        for version in ["v1", "v2", "v3"]:
            self.hosts.version = version
            self.run_job(["backup", "daily", "alpha", "--keep", "1"])
        self.assertEqual(
            ["daily-cmd.txt", "daily-err.txt", "daily-log.txt", "daily.0", "daily.1"],
            sorted(os.listdir(os.path.join(self.dst_dir, "alpha"))),
        )
        self.assertEqual("alpha v3", self.version("alpha", "daily.0"))
        self.assertEqual("alpha v2", self.version("alpha", "daily.1"))

    def test_failed_sync_rolls_back_and_other_targets_proceed(self) -> None:
        self.run_job(["backup", "daily"])
        self.hosts.version = "v2"
        self.hosts.failing.add("alpha")
        with self.assertRaises(SystemExit) as cm:
            self.run_job(["backup", "daily"])
        self.assertEqual(DIE_STATUS, cm.exception.code)
        self.assertIn("1 of 2 targets failed", str(cm.exception))
        self.assertEqual("alpha v1", self.version("alpha", "daily.0"))
        self.assertFalse(os.path.exists(os.path.join(self.dst_dir, "alpha", "daily.1")))
        self.assertEqual("beta v2", self.version("beta", "daily.0"))
        self.assertEqual("beta v1", self.version("beta", "daily.1"))
        err_log = os.path.join(self.dst_dir, "alpha", "daily-err.txt")
        self.assertIn("code 12", read_file(err_log))

    def test_unreachable_host_is_not_touched(self) -> None:
        self.hosts.unreachable.add("alpha")
        with self.assertRaises(SystemExit) as cm:
            self.run_job(["backup", "hourly"])
        self.assertEqual(DIE_STATUS, cm.exception.code)
        self.assertEqual(["beta"], self.hosts.rsync_hosts())
        self.assertFalse(os.path.exists(os.path.join(self.dst_dir, "alpha")))

    def test_target_locked_by_live_process(self) -> None:
        write_file(os.path.join(self.tmpdir, "rzbackup.alpha.pid"), f"{os.getpid()}\n")
        with self.assertRaises(SystemExit) as cm:
            self.run_job(["backup", "daily", "alpha"])
        self.assertEqual(STILL_RUNNING_STATUS, cm.exception.code)
        self.assertEqual([], self.hosts.commands)
        self.assertTrue(os.path.isfile(os.path.join(self.tmpdir, "rzbackup.alpha.pid")))

    def test_stale_lock_is_overridden(self) -> None:
        write_file(os.path.join(self.tmpdir, "rzbackup.alpha.pid"), "999999\n")
        with patch("rzbackup_main.locks.pid_exists", return_value=False):
            self.run_job(["backup", "daily", "alpha"])
        self.assertEqual(["alpha"], self.hosts.rsync_hosts())
        self.assertTrue(os.path.isfile(os.path.join(self.tmpdir, "rzbackup.alpha.pid.stale")))
        self.assertFalse(os.path.exists(os.path.join(self.tmpdir, "rzbackup.alpha.pid")))

    def test_dryrun_changes_nothing(self) -> None:
        self.run_job(["--dryrun", "backup", "daily"])
        self.assertEqual(["ssh", "ssh"], [cmd[0] for cmd in self.hosts.commands])
        self.assertFalse(os.path.exists(self.dst_dir))

    def test_invalid_target_on_cli(self) -> None:
        with self.assertRaises(SystemExit) as cm:
            self.run_job(["backup", "daily", "alpha:tunnels"])
        self.assertEqual(DIE_STATUS, cm.exception.code)
        cause = self.log.error.call_args[0][2]  # logged on exit
        self.assertIsInstance(cause, BackupError)
        self.assertEqual(INVALID_TARGET, cause.code)
        self.assertEqual([], self.hosts.commands)


#############################################################################
class TestReapAndReport(JobTestCase):

    def test_reap_requires_zfs_backend(self) -> None:
        with self.assertRaises(SystemExit) as cm:
            self.run_job(["reap"])
        self.assertEqual(DIE_STATUS, cm.exception.code)
        self.assertIn("zfs", str(cm.exception))

    def test_reap_single_host(self) -> None:
        snapshots = "backup/alpha@20000101000000\nbackup/alpha@save-20000101000000\n"
        commands: list[list[str]] = []

        def fake_zfs(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
            commands.append(cmd)
            return subprocess.CompletedProcess(cmd, 0, stdout=snapshots if cmd[1] == "list" else "", stderr="")

        self.hosts.run = fake_zfs  # type: ignore[method-assign]
        self.run_job(["reap", "alpha", "86400"], BACKUP_BACKEND="zfs")
        self.assertEqual(["zfs", "destroy", "backup/alpha@20000101000000"], commands[-1])
        self.assertEqual(2, len(commands))
        self.assertFalse(os.path.exists(os.path.join(self.tmpdir, "rzbackup.reaper.pid")))

    def test_reap_failure_exits_with_die_status(self) -> None:
        destroyed: list[str] = []

        def fake_zfs(cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess:
            if cmd[1] == "list":
                dataset = cmd[-1]
                return subprocess.CompletedProcess(cmd, 0, stdout=f"{dataset}@20000101000000\n", stderr="")
            destroyed.append(cmd[-1])
            returncode = 1 if cmd[-1].startswith("backup/alpha@") else 0
            return subprocess.CompletedProcess(cmd, returncode, stdout="", stderr="dataset is busy")

        self.hosts.run = fake_zfs  # type: ignore[method-assign]
        with self.assertRaises(SystemExit) as cm:
            self.run_job(["reap"], BACKUP_BACKEND="zfs")
        self.assertEqual(DIE_STATUS, cm.exception.code)
        self.assertEqual(["backup/alpha@20000101000000", "backup/beta@20000101000000"], destroyed)

    def test_report_exits_with_severity(self) -> None:
        doc = ReportDocument(host="backup1", date="today")
        doc.add(Severity.WARN, SPACE, "/backup is at 92% usage, over 90%")
        with patch("rzbackup_main.rzbackup.Reporter") as reporter_cls:
            reporter_cls.return_value.build_report.return_value = doc
            with self.assertRaises(SystemExit) as cm:
                self.run_job(["report"])
        self.assertEqual(WARNING_STATUS, cm.exception.code)

    def test_report_ok_exits_normally(self) -> None:
        with patch("rzbackup_main.rzbackup.Reporter") as reporter_cls:
            reporter_cls.return_value.build_report.return_value = ReportDocument(host="backup1", date="today")
            self.run_job(["report"])
        self.log.info.assert_any_call("Success. Goodbye!")


#############################################################################
class TestMain(AbstractTestCase):

    def test_main_maps_called_process_error_to_exit_code(self) -> None:
        with patch("sys.argv", ["rzbackup", "report"]), patch(
            "rzbackup_main.rzbackup.run_main", side_effect=subprocess.CalledProcessError(5, "mail")
        ):
            with self.assertRaises(SystemExit) as cm:
                rzbackup.main()
        self.assertEqual(5, cm.exception.code)

    def test_unexpected_error_exits_with_die_status(self) -> None:
        job = rzbackup.Job()
        args = self.argparser_parse_args(["report"])
        log = MagicMock(spec=logging.Logger)
        with patch("rzbackup_main.rzbackup.Params", side_effect=ValueError("boom")):
            with self.assertRaises(SystemExit) as cm:
                job.run_main(args, ["rzbackup", "report"], log)
        self.assertEqual(DIE_STATUS, cm.exception.code)
        self.assertTrue(any("boom" in str(call) for call in log.error.call_args_list))
