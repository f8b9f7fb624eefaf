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
"""Transport and storage capabilities used by the rotators, the sync driver, the reaper and the status report.

``Transport`` runs external programs (ssh, rsync) and declares the storage capabilities: datasets that hold the backups of
one host, and named point-in-time copies ("snapshots") within a dataset. ``ZfsTransport`` maps these onto ZFS datasets and
snapshots via the zfs CLI; ``HardlinkTransport`` maps them onto plain directories where each snapshot is a subdirectory and
new snapshots share unchanged files with their origin via hard links. All mutating operations honor --dryrun by only
logging what would be executed.
"""

from __future__ import (
    annotations,
)
import logging
import os
import shutil
import subprocess
from abc import (
    ABC,
    abstractmethod,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    TYPE_CHECKING,
    Final,
    final,
)

from rzbackup_main.errors import (
    DATASET_CREATE_FAILED,
    UNREACHABLE_SOURCE,
    BackupError,
)
from rzbackup_main.util.utils import (
    LOG_TRACE,
    list_formatter,
    stderr_to_str,
    subprocess_run,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from rzbackup_main.configuration import (
        Params,
        Target,
    )
    from rzbackup_main.connection import (
        Remote,
    )


#############################################################################
class Transport(ABC):
    """Runs external commands and provides the storage capabilities of one backend."""

    def __init__(self, p: Params) -> None:
        self.params: Final[Params] = p
        self.log: Final[logging.Logger] = p.log
        self.is_dry_run: Final[bool] = p.dry_run

    def run(self, cmd: list[str], mutating: bool, level: int = logging.DEBUG) -> subprocess.CompletedProcess | None:
        """Logs and runs ``cmd`` capturing its output; returns None instead of running mutating commands with --dryrun."""
        is_dry = mutating and self.is_dry_run
        self.log.log(level, "Would execute: %s" if is_dry else "Executing: %s", list_formatter(cmd))
        if is_dry:
            return None
        return subprocess_run(cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True)

    def probe_reachable(self, remote: Remote) -> None:
        """Raises BackupError(unreachable_source) unless ``ssh user@host date`` answers with non-empty output."""
        cmd = remote.ssh_cmd() + [remote.ssh_user_host, "date"]
        try:
            proc = self.run(cmd, mutating=False)
        except OSError as e:
            raise BackupError(UNREACHABLE_SOURCE, f"cannot run ssh: {e}", remote.target.host) from e
        assert proc is not None
        if proc.returncode != 0 or not proc.stdout.strip():
            stderr = stderr_to_str(proc.stderr).strip()
            raise BackupError(
                UNREACHABLE_SOURCE, f"no response from {remote.host}: {stderr or 'empty output'}", remote.target.host
            )
        self.log.log(LOG_TRACE, "Remote date on %s: %s", remote.host, proc.stdout.strip())

    def transfer(self, cmd: list[str], stdout_path: str, stderr_path: str) -> int:
        """Runs the data transfer ``cmd`` with stdout and stderr redirected into the given files; returns the exit code."""
        self.log.info("Would execute: %s" if self.is_dry_run else "Executing: %s", list_formatter(cmd))
        if self.is_dry_run:
            return 0
        with open(stdout_path, "w", encoding="utf-8") as out, open(stderr_path, "w", encoding="utf-8") as err:
            try:
                return subprocess_run(cmd, stdin=DEVNULL, stdout=out, stderr=err).returncode
            except OSError as e:
                err.write(f"{e}\n")
                return 127

    @abstractmethod
    def dataset_name(self, target: Target) -> str:
        """Returns the name of the dataset that holds all backups of ``target``."""

    @abstractmethod
    def dataset_path(self, dataset: str) -> str:
        """Returns the local directory where the live tree of ``dataset`` is found."""

    @abstractmethod
    def dataset_exists(self, dataset: str) -> bool: ...

    @abstractmethod
    def dataset_create(self, dataset: str, host: str = "") -> None:
        """Creates the dataset or raises BackupError(dataset_create_failed) on behalf of target ``host``."""

    @abstractmethod
    def snapshot_create(self, dataset: str, name: str, origin: str | None = None) -> None:
        """Creates snapshot ``name``; the hard-link backend clones it from snapshot ``origin`` if given."""

    @abstractmethod
    def snapshot_list(self, dataset: str) -> list[str]:
        """Returns the names of all snapshots of ``dataset``, sorted; empty if the dataset does not exist."""

    @abstractmethod
    def snapshot_rename(self, dataset: str, old_name: str, new_name: str) -> None: ...

    @abstractmethod
    def snapshot_destroy(self, dataset: str, name: str) -> None: ...

    @abstractmethod
    def snapshot_inventory(self) -> dict[str, list[str]]:
        """Returns all snapshot names per host, sorted by host."""


#############################################################################
@final
class ZfsTransport(Transport):
    """Storage backend that keeps one ZFS dataset per host and one ZFS snapshot per successful backup."""

    def dataset_name(self, target: Target) -> str:
        return f"{self.params.pool}/{target.host}"

    def dataset_path(self, dataset: str) -> str:
        proc = self.run([self.params.zfs_program, "list", "-H", "-p", "-o", "mountpoint", dataset], mutating=False)
        assert proc is not None
        mountpoint = proc.stdout.strip()
        if proc.returncode == 0 and mountpoint.startswith("/"):
            return mountpoint
        return os.path.join(self.params.dst_dir, dataset.split("/", 1)[-1])  # not (yet) mounted

    def dataset_exists(self, dataset: str) -> bool:
        proc = self.run([self.params.zfs_program, "list", "-H", "-o", "name", dataset], mutating=False)
        assert proc is not None
        return proc.returncode == 0

    def dataset_create(self, dataset: str, host: str = "") -> None:
        self.log.info("Creating dataset %s", dataset)
        proc = self.run([self.params.zfs_program, "create", "-p", dataset], mutating=True, level=logging.INFO)
        if proc is not None and proc.returncode != 0:
            stderr = stderr_to_str(proc.stderr).strip()
            msg = f"zfs create {dataset} failed with rc {proc.returncode}: {stderr}"
            raise BackupError(DATASET_CREATE_FAILED, msg, host)

    def snapshot_create(self, dataset: str, name: str, origin: str | None = None) -> None:
        self._run_checked([self.params.zfs_program, "snapshot", f"{dataset}@{name}"])

    def snapshot_list(self, dataset: str) -> list[str]:
        cmd = [self.params.zfs_program, "list", "-H", "-t", "snapshot", "-o", "name", "-s", "name", "-d", "1", dataset]
        proc = self.run(cmd, mutating=False)
        assert proc is not None
        if proc.returncode != 0:
            stderr = stderr_to_str(proc.stderr)
            if "dataset does not exist" in stderr:
                return []
            raise subprocess.CalledProcessError(proc.returncode, cmd, proc.stdout, proc.stderr)
        prefix = dataset + "@"
        return sorted(line[len(prefix) :] for line in proc.stdout.splitlines() if line.startswith(prefix))

    def snapshot_rename(self, dataset: str, old_name: str, new_name: str) -> None:
        self._run_checked([self.params.zfs_program, "rename", f"{dataset}@{old_name}", f"{dataset}@{new_name}"])

    def snapshot_destroy(self, dataset: str, name: str) -> None:
        self._run_checked([self.params.zfs_program, "destroy", f"{dataset}@{name}"])

    def snapshot_inventory(self) -> dict[str, list[str]]:
        pool = self.params.pool
        cmd = [self.params.zfs_program, "list", "-H", "-t", "snapshot", "-o", "name", "-s", "name", "-r", pool]
        proc = self.run(cmd, mutating=False)
        assert proc is not None
        if proc.returncode != 0:
            raise subprocess.CalledProcessError(proc.returncode, cmd, proc.stdout, proc.stderr)
        inventory: dict[str, list[str]] = {}
        for line in proc.stdout.splitlines():
            dataset, sep, name = line.strip().partition("@")
            if sep and dataset.startswith(pool + "/"):
                inventory.setdefault(dataset[len(pool) + 1 :], []).append(name)
        return {host: sorted(names) for host, names in sorted(inventory.items())}

    def _run_checked(self, cmd: list[str]) -> None:
        proc = self.run(cmd, mutating=True, level=logging.INFO)
        if proc is not None and proc.returncode != 0:
            raise subprocess.CalledProcessError(proc.returncode, cmd, proc.stdout, proc.stderr)


#############################################################################
@final
class HardlinkTransport(Transport):
    """Storage backend where a dataset is a directory per host and each snapshot is a generation subdirectory."""

    def dataset_name(self, target: Target) -> str:
        return self.params.target_dir(target)

    def dataset_path(self, dataset: str) -> str:
        return dataset

    def dataset_exists(self, dataset: str) -> bool:
        return os.path.isdir(dataset)

    def dataset_create(self, dataset: str, host: str = "") -> None:
        if self._dry(["mkdir", "-p", dataset]):
            return
        try:
            os.makedirs(dataset, exist_ok=True)
        except OSError as e:
            raise BackupError(DATASET_CREATE_FAILED, f"mkdir {dataset} failed: {e}", host) from e

    def snapshot_create(self, dataset: str, name: str, origin: str | None = None) -> None:
        dst = os.path.join(dataset, name)
        if origin is None:
            if not self._dry(["mkdir", "-p", dst]):
                os.makedirs(dst)
        else:
            src = os.path.join(dataset, origin)
            if not self._dry(["cp", "-al", src, dst]):
                shutil.copytree(src, dst, symlinks=True, copy_function=os.link)

    def snapshot_list(self, dataset: str) -> list[str]:
        try:
            with os.scandir(dataset) as iterator:
                return sorted(entry.name for entry in iterator if entry.is_dir(follow_symlinks=False))
        except FileNotFoundError:
            return []

    def snapshot_rename(self, dataset: str, old_name: str, new_name: str) -> None:
        src, dst = os.path.join(dataset, old_name), os.path.join(dataset, new_name)
        if not self._dry(["mv", src, dst]):
            if os.path.lexists(dst):
                raise FileExistsError(f"Refusing to overwrite existing {dst}")
            os.rename(src, dst)

    def snapshot_destroy(self, dataset: str, name: str) -> None:
        path = os.path.join(dataset, name)
        if not self._dry(["rm", "-rf", path]):
            shutil.rmtree(path)

    def snapshot_inventory(self) -> dict[str, list[str]]:
        inventory: dict[str, list[str]] = {}
        try:
            with os.scandir(self.params.dst_dir) as iterator:
                for entry in iterator:
                    if entry.is_dir(follow_symlinks=False):
                        inventory[entry.name] = self.snapshot_list(entry.path)
        except FileNotFoundError:
            pass
        return {host: names for host, names in sorted(inventory.items()) if names}

    def _dry(self, cmd: list[str]) -> bool:
        """Logs the shell equivalent of a file system operation; returns True if it must be skipped due to --dryrun."""
        self.log.info("Would execute: %s" if self.is_dry_run else "Executing: %s", list_formatter(cmd))
        return self.is_dry_run


def create_transport(p: Params) -> Transport:
    """Returns the transport of the configured storage backend."""
    return HardlinkTransport(p) if p.backend == "hardlink" else ZfsTransport(p)
