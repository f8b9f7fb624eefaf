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
"""Sync driver; mirrors a source tree of a remote host into a local directory with rsync over ssh and records the command
line, stdout and stderr of each transfer in log files next to the backups."""

from __future__ import (
    annotations,
)
import os
import shlex
import shutil
from dataclasses import (
    dataclass,
)
from typing import (
    TYPE_CHECKING,
    Final,
    final,
)

from rzbackup_main.util.utils import (
    write_file_atomically,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from rzbackup_main.configuration import (
        Params,
        Target,
    )
    from rzbackup_main.connection import (
        Remote,
    )
    from rzbackup_main.transport import (
        Transport,
    )

PROVENANCE_PREFIX: Final[str] = "backup-"
LOG_KINDS: Final[tuple[str, str, str]] = ("log", "err", "cmd")


#############################################################################
@dataclass(frozen=True)
@final
class SyncResult:
    """Outcome of one transfer."""

    completed: bool
    log_path: str
    err_path: str
    cmd_path: str
    returncode: int


#############################################################################
@final
class SyncDriver:
    """Runs rsync for one target and keeps its logs."""

    def __init__(self, p: Params, transport: Transport) -> None:
        self.params: Final[Params] = p
        self.transport: Final[Transport] = transport

    def probe(self, remote: Remote) -> None:
        """Fails with BackupError(unreachable_source) unless the source host answers via ssh."""
        self.transport.probe_reachable(remote)

    def log_paths(self, target: Target) -> tuple[str, str, str]:
        """Returns the stdout, stderr and command line log files of the given target."""
        p = self.params
        if p.backend == "hardlink":
            stem = os.path.join(p.target_dir(target), f"{p.backup_type}-")
        else:
            label = target.src_path.replace("/", "_")
            stem = os.path.join(target.dst_dir, f"{target.host}-{label}-")
        log_path, err_path, cmd_path = (f"{stem}{kind}.txt" for kind in LOG_KINDS)
        return log_path, err_path, cmd_path

    def exclude_files(self, target: Target) -> list[str]:
        """Returns the global excludes file and the per host excludes file, each only if it exists."""
        candidates = [self.params.excludes_file, f"{self.params.excludes_file}.{target.host}"]
        return [path for path in candidates if os.path.isfile(path)]

    def rsync_cmd(self, remote: Remote, src_path: str, dst_path: str, exclude_files: list[str]) -> list[str]:
        p = self.params
        cmd: list[str] = [p.rsync_program, "-av", "-e", shlex.join(remote.ssh_cmd())]
        if p.use_remote_sudo:
            cmd.append("--rsync-path=sudo rsync")
        cmd += ["--delete", "--delete-excluded"]
        cmd += [f"--exclude-from={path}" for path in exclude_files]
        cmd += [f"{remote.ssh_user_host}:{src_path}", dst_path]
        return cmd

    def sync(self, remote: Remote, src_path: str, dst_path: str, exclude_files: list[str]) -> SyncResult:
        """Transfers ``src_path`` of the remote host into ``dst_path``; a non-zero rsync exit code means not completed."""
        p, log = self.params, self.params.log
        log_path, err_path, cmd_path = self.log_paths(remote.target)
        cmd = self.rsync_cmd(remote, src_path, dst_path, exclude_files)
        log.info("Synchronizing %s:%s to %s", remote.target.host, src_path, dst_path)
        if not p.dry_run:
            os.makedirs(os.path.dirname(log_path), exist_ok=True)
            write_file_atomically(cmd_path, shlex.join(cmd) + "\n")
        returncode = self.transport.transfer(cmd, log_path, err_path)
        if not p.dry_run and os.path.isdir(dst_path):
            for kind, path in zip(LOG_KINDS, (log_path, err_path, cmd_path)):
                provenance = os.path.join(dst_path, f"{PROVENANCE_PREFIX}{kind}.txt")
                if os.path.lexists(provenance):
                    os.remove(provenance)  # may be a hard link shared with older generations
                shutil.copy2(path, provenance)
        completed = returncode == 0
        if completed:
            log.info("Synchronization of %s complete", remote.target.host)
        else:
            log.error("Sync of %s failed with return code %s; see %s", remote.target.host, returncode, err_path)
        return SyncResult(completed, log_path, err_path, cmd_path, returncode)
