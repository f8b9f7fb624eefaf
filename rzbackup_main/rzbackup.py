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
# Inline script metadata conforming to https://packaging.python.org/specifications/inline-script-metadata
# /// script
# requires-python = ">=3.9"
# dependencies = []
# ///
#
"""
* Main CLI entry point for rsync based rolling backups of remote hosts onto ZFS datasets or hard-linked directories.
* Overview of the rzbackup.py codebase:
* The codebase starts with docs, definition of input data and associated argument parsing into a "Params" class.
* Control flow starts in main(), which kicks off a "Job".
* A Job dispatches to one of the subcommands: backup, reap or report.
* backup: for each target, one after another: take the target's lock, open an ssh tunnel if needed, probe that the source
  host answers, let the rotator make room for the new generation, rsync into it, then either commit the new generation
  (snapshot, or timestamp plus deletion of the oldest generation) or roll back, and finally release the lock.
* reap: delete snapshots older than the maximum age of each target, keeping archival and unrecognizable ones.
* report: check pool health, space usage, locks, recent sync errors and the snapshot inventory, and print or mail it.
* A failure of one target is logged and summarized at the end, but never prevents the other targets from being processed.
"""

from __future__ import (
    annotations,
)
import argparse
import os
import subprocess
import sys
import time
from logging import (
    Logger,
)
from typing import (
    Any,
    final,
)

import rzbackup_main.loggers
from rzbackup_main.argparse_cli import (
    argument_parser,
)
from rzbackup_main.configuration import (
    LogParams,
    Params,
    Target,
)
from rzbackup_main.connection import (
    Remote,
    Tunnel,
)
from rzbackup_main.errors import (
    ALREADY_RUNNING,
    TRANSFER_FAILED,
    BackupError,
)
from rzbackup_main.locks import (
    LockManager,
)
from rzbackup_main.loggers import (
    get_simple_logger,
    reset_logger,
)
from rzbackup_main.reaper import (
    Reaper,
)
from rzbackup_main.report import (
    Reporter,
    Severity,
    deliver,
)
from rzbackup_main.rotation import (
    create_rotator,
)
from rzbackup_main.sync import (
    SyncDriver,
)
from rzbackup_main.transport import (
    Transport,
    create_transport,
)
from rzbackup_main.util.utils import (
    DIE_STATUS,
    LOG_TRACE,
    PROG_NAME,
    STILL_RUNNING_STATUS,
    die,
    human_readable_duration,
    xfinally,
)


#############################################################################
def main() -> None:
    """API for command line clients."""
    try:
        run_main(argument_parser().parse_args(), sys.argv)
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode)


def run_main(args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
    """API for Python clients; visible for testing; may become a public API eventually."""
    Job().run_main(args, sys_argv, log)


#############################################################################
@final
class Job:
    """Executes one rzbackup run."""

    def __init__(self) -> None:
        self.params: Params
        self.transport: Transport
        self.lock_manager: LockManager
        self.all_exceptions: list[str] = []
        self.all_exceptions_count: int = 0
        self.max_exceptions_to_summarize: int = 10000
        self.first_exception: BaseException | None = None
        self.num_already_running: int = 0
        self.is_test_mode: bool = False  # for testing only

    def run_main(self, args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
        """Sets up logging and configuration, then runs the requested subcommand."""
        is_own_logger = log is None
        try:
            log_params = LogParams(args)
            log = rzbackup_main.loggers.get_logger(log_params=log_params, args=args, log=log)
        except BaseException as e:
            get_simple_logger(PROG_NAME).error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
            raise
        with xfinally(lambda: reset_logger(log) if is_own_logger else None):  # closes the log file handlers on exit
            log.info("%s", f"Log file is: {log_params.log_file}")

            def log_error_on_exit(error: Any, status_code: Any, exc_info: bool = False) -> None:
                log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

            try:
                log.info("CLI arguments: %s %s", " ".join(sys_argv or []), f"[euid: {os.geteuid()}]")
                if self.is_test_mode:
                    log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                self.params = p = Params(args, sys_argv or [], log_params, log)
                log.log(LOG_TRACE, "Params: %s", p)
                self.transport = create_transport(p)
                self.lock_manager = LockManager(p.lock_base, log)
                if p.command == "backup":
                    self.run_backup()
                elif p.command == "reap":
                    self.run_reap()
                else:
                    self.run_report()
            except BackupError as e:
                status = STILL_RUNNING_STATUS if e.code == ALREADY_RUNNING else DIE_STATUS
                log_error_on_exit(e, status)
                raise SystemExit(status) from e
            except subprocess.CalledProcessError as e:
                log_error_on_exit(e, e.returncode)
                raise
            except SystemExit as e:
                log_error_on_exit(e, e.code)
                raise
            except (subprocess.TimeoutExpired, UnicodeDecodeError) as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except BaseException as e:
                log_error_on_exit(e, DIE_STATUS, exc_info=True)
                raise SystemExit(DIE_STATUS) from e
            finally:
                log.info("%s", f"Log file was: {log_params.log_file}")
            log.info("Success. Goodbye!")
            sys.stderr.flush()

    def run_backup(self) -> None:
        """Backs up each target in turn; failures are tolerated per target and summarized at the end."""
        p, log = self.params, self.params.log
        targets = p.targets(p.args.target)
        log.info("Starting %s backup of %s targets", p.backup_type, len(targets))
        for target in targets:
            try:
                self.backup_target(target)
            except (BackupError, subprocess.CalledProcessError, OSError) as e:
                log.error("%s", e)
                self.append_exception(e, "backup", str(target))
        error_count = self.all_exceptions_count
        if error_count > 0:
            msgs = "\n".join([f"{i + 1}/{error_count}: {e}" for i, e in enumerate(self.all_exceptions)])
            log.error("%s", f"Tolerated {error_count} errors. Error Summary: \n{msgs}")
            status = STILL_RUNNING_STATUS if self.num_already_running == error_count else DIE_STATUS
            die(f"{error_count} of {len(targets)} targets failed", status)

    def backup_target(self, target: Target) -> str:
        """Runs lock, probe, prepare, sync and commit or rollback for one target; returns the id of the new generation."""
        p, log = self.params, self.params.log
        start_time = time.monotonic()
        log.info("%s backup of %s", p.backup_type, target.host)
        log.info("    src=%s:%s", target.user_host, target.src_path)
        log.info("    dst=%s", p.target_dir(target))
        log.info("    tun=%s", target.tunnel)
        remote = Remote(p, target)
        driver = SyncDriver(p, self.transport)
        rotator = create_rotator(p, self.transport, target)
        with self.lock_manager.locked(target.host):
            with Tunnel(p, target, lock_manager=self.lock_manager):
                driver.probe(remote)  # before anything destructive happens
                try:
                    dst_path = rotator.prepare()
                    result = driver.sync(remote, target.src_path, dst_path, driver.exclude_files(target))
                except BaseException:
                    rotator.rollback()
                    raise
                if not result.completed:
                    rotator.rollback()
                    raise BackupError(
                        TRANSFER_FAILED,
                        f"rsync failed with return code {result.returncode}; see {result.err_path}",
                        target.host,
                    )
                generation = rotator.commit()
        elapsed = human_readable_duration(time.monotonic() - start_time)
        log.info("%s backup of %s complete: %s (took %s)", p.backup_type, target.host, generation, elapsed)
        return generation

    def run_reap(self) -> None:
        """Deletes expired snapshots of one host or of all targets."""
        p, log = self.params, self.params.log
        if p.backend != "zfs":
            die(f"The reap command requires the 'zfs' backend, but got: {p.backend}")
        host = p.args.host
        targets = p.targets([host]) if host else p.targets()
        log.info("Start reaping")
        stats = Reaper(p, self.transport).reap_all(targets, p.args.max_age)
        log.info("Reaping complete. %s", stats)
        if stats.failed > 0:
            die(f"Reaping failed for {stats.failed} snapshots or targets")

    def run_report(self) -> None:
        """Builds the status report, prints or mails it, and exits with its severity."""
        p = self.params
        doc = Reporter(p, self.transport, self.lock_manager).build_report()
        severity = deliver(p, doc)
        if severity != Severity.OK:
            die(f"backup status: {severity.name}", int(severity))

    def append_exception(self, e: BaseException, task_name: str, task_description: str) -> None:
        """Records and logs an exception that was encountered while processing a target."""
        self.first_exception = self.first_exception or e
        if len(self.all_exceptions) < self.max_exceptions_to_summarize:  # cap max memory consumption
            self.all_exceptions.append(str(e))
        self.all_exceptions_count += 1
        if isinstance(e, BackupError) and e.code == ALREADY_RUNNING:
            self.num_already_running += 1
        self.params.log.error(f"#{self.all_exceptions_count}: Done with %s: %s", task_name, task_description)


#############################################################################
if __name__ == "__main__":
    main()
