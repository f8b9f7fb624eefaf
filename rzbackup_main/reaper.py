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
"""Snapshot reaper; deletes the timestamped snapshots of each target that are older than that target's maximum age.

Snapshots whose name starts with the archival prefix are kept forever, and so are snapshots whose name is not a valid 14
digit local timestamp: the reaper only ever deletes what it can prove to be too old.
"""

from __future__ import (
    annotations,
)
import subprocess
from dataclasses import (
    dataclass,
)
from datetime import (
    datetime,
)
from typing import (
    TYPE_CHECKING,
    Callable,
    Final,
    final,
)

from rzbackup_main.locks import (
    REAPER_LOCK_KEY,
    LockManager,
)
from rzbackup_main.util.utils import (
    TIMESTAMP_REGEX,
    current_datetime,
    parse_timestamp,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from rzbackup_main.configuration import (
        Params,
        Target,
    )
    from rzbackup_main.transport import (
        Transport,
    )

DELETE: Final[str] = "delete"
SKIP: Final[str] = "skip"


def classify_snapshot(name: str, now: datetime, max_age_secs: int, archival_prefix: str) -> tuple[str, str]:
    """Returns (DELETE|SKIP, reason) for the snapshot with the given name, i.e. the part after '@'."""
    if archival_prefix and name.startswith(archival_prefix):
        return SKIP, "snapshot is marked as archival"
    if not TIMESTAMP_REGEX.fullmatch(name):
        return SKIP, "no recognizable timestamp"
    try:
        timestamp = parse_timestamp(name)
    except ValueError:
        return SKIP, "no valid age found"
    delta = int(now.timestamp() - timestamp.timestamp())  # epoch seconds; a DST change shifts local time, not age
    if delta > max_age_secs:
        return DELETE, f"snapshot age {delta} > {max_age_secs}"
    return SKIP, f"snapshot too young: {delta} <= {max_age_secs}"

#############################################################################
@dataclass
@final
class ReapStats:
    """Counts of one reaper pass; ``failed`` counts snapshots that could not be deleted plus targets that could not be
    listed."""

    found: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0

    def __iadd__(self, other: ReapStats) -> ReapStats:
        self.found += other.found
        self.deleted += other.deleted
        self.skipped += other.skipped
        self.failed += other.failed
        return self

    def __str__(self) -> str:
        return f"found: {self.found}, deleted: {self.deleted}, skipped: {self.skipped}, failed: {self.failed}"


#############################################################################
@final
class Reaper:
    """Deletes expired snapshots of one or all targets."""

    def __init__(
        self, p: Params, transport: Transport, now_fn: Callable[[], datetime] = current_datetime
    ) -> None:
        self.params: Final[Params] = p
        self.transport: Final[Transport] = transport
        self.now_fn: Final[Callable[[], datetime]] = now_fn

    def reap(self, target: Target, max_age_secs: int) -> ReapStats:
        """Deletes all snapshots of ``target`` that are older than ``max_age_secs``; with --dryrun only logs the deletes.

        A snapshot that cannot be destroyed (e.g. because it is held, busy or has clones) is logged and counted as failed,
        and the remaining snapshots are still processed.
        """
        p, log = self.params, self.params.log
        dataset = self.transport.dataset_name(target)
        log.info("Deleting snapshots of %s older than %s seconds", target.host, max_age_secs)
        now = self.now_fn()
        stats = ReapStats()
        for name in self.transport.snapshot_list(dataset):
            stats.found += 1
            action, reason = classify_snapshot(name, now, max_age_secs, p.archival_prefix)
            if action == DELETE:
                log.info("Destroying %s@%s: %s", dataset, name, reason)
                try:
                    self.transport.snapshot_destroy(dataset, name)
                except (subprocess.CalledProcessError, OSError) as e:
                    stats.failed += 1
                    log.error("%s: Cannot destroy %s@%s: %s", target.host, dataset, name, e)
                    continue
                if not p.dry_run:
                    stats.deleted += 1
            else:
                stats.skipped += 1
                log.debug("Skipping %s@%s: %s", dataset, name, reason)
        log.info("Reaped %s: %s", target.host, stats)
        return stats

    def reap_all(self, targets: list[Target], max_age_secs: int | None = None) -> ReapStats:
        """Reaps each target while holding the global reaper lock; an explicit ``max_age_secs`` overrides all per target
        values, else each target's own max age applies, falling back to the configured default. A target whose snapshots
        cannot be listed counts as one failure and does not stop the other targets from being reaped."""
        p = self.params
        total = ReapStats()
        with LockManager(p.lock_base, p.log).locked(REAPER_LOCK_KEY):
            for target in targets:
                if max_age_secs is not None:
                    max_age = max_age_secs
                elif target.max_age is not None:
                    max_age = target.max_age
                else:
                    max_age = p.max_age
                try:
                    total += self.reap(target, max_age)
                except (subprocess.CalledProcessError, OSError) as e:
                    total.failed += 1
                    p.log.error("%s: Cannot reap snapshots: %s", target.host, e)
        return total
