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
"""Retention rotators: make room for a new backup generation before the sync, and finalize or undo it afterwards.

The hard-link rotator keeps ``TYPE.0`` (newest) to ``TYPE.N`` (oldest) generation directories per host. Before a sync it
moves ``TYPE.N`` aside to ``TYPE.oldest``, shifts the others up by one, and clones ``TYPE.0`` into ``TYPE.1`` via hard links,
so that rsync can then update ``TYPE.0`` in place while unchanged files stay shared between generations. A leftover
``TYPE.oldest`` indicates an unfinished previous run, and rotation refuses to proceed until an operator cleans it up.

The ZFS rotator syncs into the live dataset tree and takes a snapshot named after the current local time on success.
"""

from __future__ import (
    annotations,
)
import os
import time
from abc import (
    ABC,
    abstractmethod,
)
from datetime import (
    datetime,
    timedelta,
)
from typing import (
    TYPE_CHECKING,
    Callable,
    Final,
    final,
)

from rzbackup_main.errors import (
    ROTATION_CONFLICT,
    BackupError,
)
from rzbackup_main.util.utils import (
    current_datetime,
    format_timestamp,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from rzbackup_main.configuration import (
        Params,
        Target,
    )
    from rzbackup_main.transport import (
        Transport,
    )

OLDEST_SUFFIX: Final[str] = "oldest"


#############################################################################
class Rotator(ABC):
    """Prepares the destination of one backup run and then either commits or rolls back the new generation."""

    def __init__(self, p: Params, transport: Transport, target: Target) -> None:
        self.params: Final[Params] = p
        self.transport: Final[Transport] = transport
        self.target: Final[Target] = target
        self.dataset: Final[str] = transport.dataset_name(target)

    @abstractmethod
    def prepare(self) -> str:
        """Makes room for the new generation and returns the directory that the sync shall write into."""

    @abstractmethod
    def commit(self) -> str:
        """Finalizes the new generation after a successful sync; returns its identifier."""

    @abstractmethod
    def rollback(self) -> None:
        """Restores the pre-run state after a failed sync, as far as the backend needs that."""


#############################################################################
@final
class HardlinkRotator(Rotator):
    """Rotates ``TYPE.0 .. TYPE.N`` generation directories that share unchanged files via hard links."""

    def __init__(self, p: Params, transport: Transport, target: Target) -> None:
        super().__init__(p, transport, target)
        assert p.backup_type is not None
        self.backup_type: Final[str] = p.backup_type
        self.keep_count: Final[int] = p.keep_count(p.backup_type)
        self.oldest: Final[str] = f"{self.backup_type}.{OLDEST_SUFFIX}"
        self._moves: list[tuple[str, str]] = []  # renames done by rotate(), in order
        self._new_slot: str | None = None  # slot created by rotate(): a hard-link clone in slot 1, or an empty slot 0

    def slot(self, index: int) -> str:
        return f"{self.backup_type}.{index}"

    def slot_path(self, index: int) -> str:
        return os.path.join(self.dataset, self.slot(index))

    def prepare(self) -> str:
        if not self.transport.dataset_exists(self.dataset):
            self.transport.dataset_create(self.dataset, self.target.host)
        return self.rotate()

    def rotate(self) -> str:
        """Shifts all generations up by one and returns the path of the newest slot, which is then ready for the sync."""
        log = self.params.log
        transport, dataset = self.transport, self.dataset
        names: set[str] = set(transport.snapshot_list(dataset))
        if self.oldest in names:
            raise BackupError(
                ROTATION_CONFLICT,
                f"{os.path.join(dataset, self.oldest)} exists, which probably indicates a failure of a previous run",
                self.target.host,
            )
        self._moves = []
        self._new_slot = None
        n = self.keep_count
        if self.slot(n) in names:
            log.debug("Moving aside the oldest generation %s", self.slot(n))
            self._rename(self.slot(n), self.oldest)
        log.debug("Shifting existing generations of %s", dataset)
        for i in range(n - 1, 0, -1):
            if self.slot(i) in names:
                self._rename(self.slot(i), self.slot(i + 1))
        if self.slot(0) in names:
            log.debug("Creating a hard-linked copy of %s", self.slot(0))
            try:
                transport.snapshot_create(dataset, self.slot(1), origin=self.slot(0))
            except BaseException:
                if os.path.lexists(self.slot_path(1)):
                    transport.snapshot_destroy(dataset, self.slot(1))  # partial copy
                raise
            self._new_slot = self.slot(1)
        else:
            transport.snapshot_create(dataset, self.slot(0))
            self._new_slot = self.slot(0)
        return self.slot_path(0)

    def commit(self) -> str:
        path = self.slot_path(0)
        if not self.params.dry_run:
            os.utime(path)  # put a timestamp on the newest generation
        if any(dst == self.oldest for _, dst in self._moves):
            self.params.log.debug("Deleting the oldest generation %s", self.oldest)
            self.transport.snapshot_destroy(self.dataset, self.oldest)
        self._moves = []
        self._new_slot = None
        return path

    def rollback(self) -> None:
        log = self.params.log
        transport, dataset = self.transport, self.dataset
        log.warning("Rolling back generations of %s", dataset)
        if self._new_slot is not None:
            if self.params.dry_run or os.path.isdir(self.slot_path(0)):
                transport.snapshot_destroy(dataset, self.slot(0))  # partially synced
            if self._new_slot == self.slot(1):
                transport.snapshot_rename(dataset, self.slot(1), self.slot(0))
        for src, dst in reversed(self._moves):
            transport.snapshot_rename(dataset, dst, src)
        self._moves = []
        self._new_slot = None

    def _rename(self, src: str, dst: str) -> None:
        self.transport.snapshot_rename(self.dataset, src, dst)
        self._moves.append((src, dst))


#############################################################################
@final
class ZfsRotator(Rotator):
    """Syncs into the live tree of the host's dataset and takes a timestamped snapshot on success."""

    def __init__(
        self,
        p: Params,
        transport: Transport,
        target: Target,
        now_fn: Callable[[], datetime] = current_datetime,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(p, transport, target)
        self.now_fn: Final[Callable[[], datetime]] = now_fn
        self.sleep_fn: Final[Callable[[float], None]] = sleep_fn

    def prepare(self) -> str:
        if not self.transport.dataset_exists(self.dataset):
            self.transport.dataset_create(self.dataset, self.target.host)
        return self.transport.dataset_path(self.dataset)

    def commit(self) -> str:
        existing: set[str] = set(self.transport.snapshot_list(self.dataset))
        now = self.now_fn()
        label = format_timestamp(now)
        while label in existing:  # two runs within the same second must not collide on the snapshot name
            next_second = now.replace(microsecond=0) + timedelta(seconds=1)
            self.sleep_fn(max(0.0, (next_second - now).total_seconds()))
            now = max(self.now_fn(), next_second)
            label = format_timestamp(now)
        self.params.log.info("Creating snapshot %s@%s", self.dataset, label)
        self.transport.snapshot_create(self.dataset, label)
        return f"{self.dataset}@{label}"

    def rollback(self) -> None:
        self.params.log.warning("Not creating a snapshot of %s; its last snapshot remains the last good state", self.dataset)


def create_rotator(p: Params, transport: Transport, target: Target) -> Rotator:
    """Returns the rotator of the configured storage backend."""
    return HardlinkRotator(p, transport, target) if p.backend == "hardlink" else ZfsRotator(p, transport, target)
