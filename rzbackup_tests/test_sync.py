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
"""Unit tests for the rsync based sync driver."""

from __future__ import (
    annotations,
)
import os
import shlex
import subprocess
import unittest
from unittest.mock import (
    patch,
)

from rzbackup_main.configuration import (
    Target,
)
from rzbackup_main.connection import (
    Remote,
    tunnel_port,
)
from rzbackup_main.sync import (
    SyncDriver,
)
from rzbackup_main.transport import (
    create_transport,
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
        TestSyncDriver,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestSyncDriver(AbstractTestCase):

    def setUp(self) -> None:
        self.tmpdir = self.make_tmpdir()
        self.dst_dir = os.path.join(self.tmpdir, "backup")
        self.excludes = os.path.join(self.tmpdir, "excludes")
        self.target = Target(user="root", host="alpha", src_path="/home", dst_dir=self.dst_dir)

    def make_driver(self, *cli: str, **settings: str) -> SyncDriver:
        settings = {"BACKUP_DST_DIR": self.dst_dir, "BACKUP_EXCLUDES_FILE": self.excludes, **settings}
        p = self.params_for(self.tmpdir, list(cli) + ["backup", "daily"], **settings)
        return SyncDriver(p, create_transport(p))

    def test_log_paths_per_backend(self) -> None:
        driver = self.make_driver(BACKUP_BACKEND="hardlink")
        host_dir = os.path.join(self.dst_dir, "alpha")
        expected = tuple(os.path.join(host_dir, f"daily-{kind}.txt") for kind in ("log", "err", "cmd"))
        self.assertEqual(expected, driver.log_paths(self.target))

        driver = self.make_driver()
        expected = tuple(os.path.join(self.dst_dir, f"alpha-_home-{kind}.txt") for kind in ("log", "err", "cmd"))
        self.assertEqual(expected, driver.log_paths(self.target))

    def test_exclude_files(self) -> None:
        driver = self.make_driver()
        self.assertEqual([], driver.exclude_files(self.target))
        write_file(self.excludes, "/proc\n/sys\n")
        self.assertEqual([self.excludes], driver.exclude_files(self.target))
        write_file(self.excludes + ".alpha", "/var/cache\n")
        self.assertEqual([self.excludes, self.excludes + ".alpha"], driver.exclude_files(self.target))

    def test_rsync_cmd(self) -> None:
        driver = self.make_driver(BACKUP_KEYFILE="/root/.ssh/id_backup")
        remote = Remote(driver.params, self.target)
        cmd = driver.rsync_cmd(remote, "/home", "/backup/alpha", ["/etc/excludes"])
        self.assertEqual(
            [
                "rsync",
                "-av",
                "-e",
                "ssh -i /root/.ssh/id_backup",
                "--delete",
                "--delete-excluded",
                "--exclude-from=/etc/excludes",
                "root@alpha:/home",
                "/backup/alpha",
            ],
            cmd,
        )

    def test_rsync_cmd_with_remote_sudo_and_tunnel(self) -> None:
        driver = self.make_driver(BACKUP_USE_REMOTE_SUDO="yes")
        tunneled = Target(user="root", host="alpha", src_path="/", dst_dir=self.dst_dir, tunnel=True)
        cmd = driver.rsync_cmd(Remote(driver.params, tunneled), "/", "/backup/alpha", [])
        self.assertIn("--rsync-path=sudo rsync", cmd)
        self.assertEqual(f"ssh -p {tunnel_port(driver.params, tunneled)} -o NoHostAuthenticationForLocalhost=yes", cmd[3])
        self.assertEqual("root@localhost:/", cmd[-2])

    def test_sync_success_keeps_logs_and_provenance(self) -> None:
        driver = self.make_driver(BACKUP_BACKEND="hardlink")
        dst_path = os.path.join(self.dst_dir, "alpha", "daily.0")
        os.makedirs(dst_path)

        def fake_rsync(cmd: list[str], **kwargs: object) -> subprocess.CompletedProcess:
            kwargs["stdout"].write("sent 100 bytes\n")  # type: ignore[attr-defined]
            return subprocess.CompletedProcess(cmd, 0)

        with patch("rzbackup_main.transport.subprocess_run", side_effect=fake_rsync) as run:
            result = driver.sync(Remote(driver.params, self.target), "/home", dst_path, [])
        self.assertTrue(result.completed)
        self.assertEqual(0, result.returncode)
        cmd = run.call_args[0][0]
        self.assertEqual(shlex.join(cmd) + "\n", read_file(result.cmd_path))
        self.assertEqual("sent 100 bytes\n", read_file(result.log_path))
        self.assertEqual("", read_file(result.err_path))
        self.assertEqual("sent 100 bytes\n", read_file(os.path.join(dst_path, "backup-log.txt")))
        self.assertTrue(os.path.isfile(os.path.join(dst_path, "backup-err.txt")))
        self.assertTrue(os.path.isfile(os.path.join(dst_path, "backup-cmd.txt")))

    def test_sync_failure(self) -> None:
        driver = self.make_driver()
        os.makedirs(self.dst_dir)

        def fake_rsync(cmd: list[str], **kwargs: object) -> subprocess.CompletedProcess:
            err = kwargs["stderr"]
            err.write("rsync error: some files could not be transferred (code 23)\n")  # type: ignore[attr-defined]
            return subprocess.CompletedProcess(cmd, 23)

        with patch("rzbackup_main.transport.subprocess_run", side_effect=fake_rsync):
            result = driver.sync(Remote(driver.params, self.target), "/home", os.path.join(self.dst_dir, "alpha"), [])
        self.assertFalse(result.completed)
        self.assertEqual(23, result.returncode)
        self.assertIn("code 23", read_file(result.err_path))
        driver.params.log.error.assert_called()  # type: ignore[attr-defined]

    def test_sync_in_dryrun_writes_nothing(self) -> None:
        driver = self.make_driver("--dryrun")
        with patch("rzbackup_main.transport.subprocess_run") as run:
            result = driver.sync(Remote(driver.params, self.target), "/home", os.path.join(self.dst_dir, "alpha"), [])
        run.assert_not_called()
        self.assertTrue(result.completed)
        self.assertFalse(os.path.exists(self.dst_dir))

    def test_probe_delegates_to_transport(self) -> None:
        driver = self.make_driver()
        remote = Remote(driver.params, self.target)
        with patch.object(driver.transport, "probe_reachable") as probe:
            driver.probe(remote)
        probe.assert_called_once_with(remote)
