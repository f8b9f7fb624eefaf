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
"""Per target advisory lock files that prevent two backup (or reaper) runs from operating on the same target at once.

A lock file ``<lock_base>.<target>.pid`` holds the process id of its owner. A lock is valid only while its owner is alive
and still runs rzbackup; otherwise it is stale and gets overridden, and the override is recorded in a ``.stale`` marker
file next to the lock so that the status report can flag it. Acquisition never blocks or retries. The check and write of a
lock file happen under an exclusive flock on a ``.guard`` file next to it, so two processes cannot both take the same lock.
"""

from __future__ import (
    annotations,
)
import contextlib
import fcntl
import os
import time
from collections.abc import (
    Iterator,
)
from dataclasses import (
    dataclass,
)
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    Callable,
    Final,
    final,
)

from rzbackup_main.errors import (
    ALREADY_RUNNING,
    BackupError,
)
from rzbackup_main.util.utils import (
    FILE_PERMISSIONS,
    PROG_NAME,
    format_timestamp,
    pid_exists,
    process_command,
    write_file_atomically,
)

LOCK_SUFFIX: Final[str] = ".pid"
GUARD_SUFFIX: Final[str] = ".guard"
STALE_SUFFIX: Final[str] = ".stale"
REAPER_LOCK_KEY: Final[str] = "reaper"


#############################################################################
@dataclass(frozen=True)
@final
class LockInfo:
    """Snapshot of the state of one lock file, as seen by the status report."""

    key: str
    path: str
    pid: int | None
    alive: bool
    age_secs: float


#############################################################################
@dataclass(frozen=True)
@final
class StaleMarker:
    """Record of a stale lock that was overridden."""

    key: str
    path: str
    content: str
    age_secs: float


#############################################################################
@final
class LockManager:
    """Acquires and releases per target lock files below the directory of ``lock_base``."""

    def __init__(
        self,
        lock_base: str,
        log: Logger,
        program_name: str = PROG_NAME,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self.lock_base: Final[str] = lock_base
        self.log: Final[Logger] = log
        self.program_name: Final[str] = program_name  # a live owner must still be running this program
        self.time_fn: Final[Callable[[], float]] = time_fn

    def lock_file_name(self, key: str) -> str:
        return f"{self.lock_base}.{key}{LOCK_SUFFIX}"

    def acquire(self, key: str) -> None:
        """Takes the lock of ``key`` or raises BackupError(already_running) if a live owner holds it, or if another process
        is acquiring it at this very moment."""
        path = self.lock_file_name(key)
        with self._guarded(key, path):
            self.log.debug("Checking lock file: %s", path)
            previous_pid: int | None = None
            if os.path.lexists(path):
                previous_pid = read_pid(path)
                if previous_pid is not None and self.is_owner_alive(previous_pid):
                    msg = f"already running for target: process {previous_pid} holds {path}"
                    raise BackupError(ALREADY_RUNNING, msg, key)
                msg = f"Overriding stale lock {path}: no live {self.program_name} process {previous_pid} found"
                self.log.warning("%s", msg)
                marker = f"{previous_pid} {format_timestamp(datetime.fromtimestamp(self.time_fn()))}\n"
                write_file_atomically(path + STALE_SUFFIX, marker)
            write_file_atomically(path, f"{os.getpid()}\n")
        self.log.debug("Acquired lock file: %s", path)

    @contextlib.contextmanager
    def _guarded(self, key: str, path: str) -> Iterator[None]:
        """Serializes the check-and-write of the lock file of ``key`` across processes via an exclusive flock on a guard file
        next to it; the flock is auto-released when the fd is closed or the process terminates."""
        guard_file = path + GUARD_SUFFIX
        guard_fd = os.open(guard_file, os.O_WRONLY | os.O_CREAT | os.O_NOFOLLOW, FILE_PERMISSIONS)
        try:
            try:
                fcntl.flock(guard_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)  # LOCK_NB ... non-blocking
            except BlockingIOError as e:
                raise BackupError(ALREADY_RUNNING, f"lock is being acquired by another process: {path}", key) from e
            yield
        finally:
            os.close(guard_fd)

    def release(self, key: str) -> None:
        """Removes the lock file of ``key``; a failure to do so is only worth a warning."""
        path = self.lock_file_name(key)
        try:
            os.remove(path)
        except OSError as e:
            self.log.warning("Cannot remove lock file %s: %s", path, e)
        else:
            self.log.debug("Released lock file: %s", path)

    @contextlib.contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Holds the lock of ``key`` for the duration of the with-block."""
        self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    def is_owner_alive(self, pid: int) -> bool:
        """Returns True if ``pid`` is alive and (as far as can be told) still runs our program."""
        if pid == os.getpid():
            return True
        if pid_exists(pid) is False:
            return False
        command = process_command(pid)
        if command is None:
            return pid_exists(pid) is not False  # cannot tell which program it is; err on the side of caution
        return self.program_name in command  # else the pid has been reused by an unrelated program

    def list_locks(self) -> list[LockInfo]:
        """Returns all lock files below the lock directory, sorted by key."""
        now = self.time_fn()
        results: list[LockInfo] = []
        for key, path in self._scan(LOCK_SUFFIX):
            try:
                mtime = os.stat(path, follow_symlinks=False).st_mtime
            except FileNotFoundError:
                continue  # released concurrently
            pid = read_pid(path)
            alive = pid is not None and self.is_owner_alive(pid)
            results.append(LockInfo(key=key, path=path, pid=pid, alive=alive, age_secs=now - mtime))
        return results

    def list_stale_markers(self) -> list[StaleMarker]:
        """Returns the records of stale locks that have been overridden, sorted by key."""
        now = self.time_fn()
        results: list[StaleMarker] = []
        for key, path in self._scan(LOCK_SUFFIX + STALE_SUFFIX):
            try:
                mtime = os.stat(path, follow_symlinks=False).st_mtime
                with open(path, "r", encoding="utf-8") as fd:
                    content = fd.read().strip()
            except FileNotFoundError:
                continue
            results.append(StaleMarker(key=key, path=path, content=content, age_secs=now - mtime))
        return results

    def _scan(self, suffix: str) -> list[tuple[str, str]]:
        lock_dir = os.path.dirname(self.lock_base) or "."
        prefix = os.path.basename(self.lock_base) + "."
        results: list[tuple[str, str]] = []
        try:
            with os.scandir(lock_dir) as iterator:
                for entry in iterator:
                    name = entry.name
                    if name.startswith(prefix) and name.endswith(suffix) and len(name) > len(prefix) + len(suffix):
                        results.append((name[len(prefix) : -len(suffix)], entry.path))
        except FileNotFoundError:
            pass
        return sorted(results)


def read_pid(path: str) -> int | None:
    """Returns the pid stored in the given lock file, or None if the file is missing, empty or garbled."""
    try:
        with open(path, "r", encoding="utf-8") as fd:
            text = fd.read().strip()
    except (FileNotFoundError, UnicodeDecodeError):
        return None
    return int(text) if text.isdigit() else None
