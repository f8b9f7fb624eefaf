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
"""Status report; inspects pool health, recent sync logs, disk space, lock files and the snapshot inventory of the backup
server, classifies the result as OK, WARN or FAIL and prints or mails a plain text report.

Each check contributes findings with a severity; the overall severity is the maximum over all findings. A reporting source
that cannot be queried (e.g. missing binary or missing pool) yields a FAIL finding that says so, rather than an exception.
"""

from __future__ import (
    annotations,
)
import enum
import os
import subprocess
import sys
import time
from dataclasses import (
    dataclass,
    field,
)
from datetime import (
    datetime,
)
from subprocess import (
    PIPE,
)
from typing import (
    TYPE_CHECKING,
    Callable,
    Final,
    final,
)

from rzbackup_main.locks import (
    LockManager,
)
from rzbackup_main.sync import (
    PROVENANCE_PREFIX,
)
from rzbackup_main.util.utils import (
    CRITICAL_STATUS,
    TIMESTAMP_REGEX,
    WARNING_STATUS,
    human_readable_duration,
    list_formatter,
    stderr_to_str,
    subprocess_run,
    tail,
    xprint,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from rzbackup_main.configuration import (
        Params,
    )
    from rzbackup_main.transport import (
        Transport,
    )

PARTIAL_SUCCESS_PREFIX: Final[str] = "Authenticated with partial success"
NO_KNOWN_DATA_ERRORS: Final[str] = "No known data errors"
ERR_LOG_SUFFIX: Final[str] = "-err.txt"
PROVENANCE_ERR_LOG: Final[str] = PROVENANCE_PREFIX + "err.txt"
WARN_POOL_STATES: Final[frozenset[str]] = frozenset(["DEGRADED"])
FAIL_POOL_STATES: Final[frozenset[str]] = frozenset(["FAULTED", "UNAVAIL", "SUSPENDED", "REMOVED", "OFFLINE"])

# finding categories, in the order in which the report lists them
POOL: Final[str] = "pool"
SYNC: Final[str] = "sync"
SPACE: Final[str] = "space"
LOCKS: Final[str] = "locks"
INVENTORY: Final[str] = "inventory"
HOST: Final[str] = "host"
CATEGORY_TITLES: Final[dict[str, str]] = {
    POOL: "pool failures:",
    SYNC: "sync failures:",
    SPACE: "space limits:",
    LOCKS: "lock warnings:",
    INVENTORY: "snapshot inventory failures:",
    HOST: "host failures:",
}
ALWAYS_LISTED: Final[dict[str, str]] = {POOL: "no known pool failures", SYNC: "no known sync failures"}


class Severity(enum.IntEnum):
    """Overall health of the backup server; doubles as exit status of the report command."""

    OK = 0
    WARN = WARNING_STATUS
    FAIL = CRITICAL_STATUS


#############################################################################
@dataclass(frozen=True)
@final
class Finding:
    """One problem detected by a check."""

    severity: Severity
    category: str
    message: str


#############################################################################
@dataclass(frozen=True)
@final
class InventoryRow:
    """Snapshot summary of one target."""

    target: str
    count: int
    archival: int
    oldest: str
    newest: str
    names: tuple[str, ...]


#############################################################################
@dataclass
@final
class ReportDocument:
    """Everything the report shows; filled in by the checks of the Reporter, then classified and rendered."""

    host: str
    date: str
    uptime: str = ""
    findings: list[Finding] = field(default_factory=list)
    sections: list[tuple[str, list[str]]] = field(default_factory=list)  # informational (title, lines)
    failed_logs: list[tuple[str, list[str]]] = field(default_factory=list)  # (path, last lines)
    inventory: list[InventoryRow] = field(default_factory=list)

    def add(self, severity: Severity, category: str, message: str) -> None:
        self.findings.append(Finding(severity, category, message))


#############################################################################
@final
class Reporter:
    """Runs all checks and builds the ReportDocument."""

    def __init__(
        self,
        p: Params,
        transport: Transport,
        lock_manager: LockManager | None = None,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self.params: Final[Params] = p
        self.transport: Final[Transport] = transport
        self.lock_manager: Final[LockManager] = lock_manager or LockManager(p.lock_base, p.log, time_fn=time_fn)
        self.time_fn: Final[Callable[[], float]] = time_fn

    def build_report(self) -> ReportDocument:
        p = self.params
        now = self.time_fn()
        doc = ReportDocument(host=p.hostname, date=datetime.fromtimestamp(now).strftime("%a %b %d %H:%M:%S %Y"))
        doc.uptime = "\n".join(self._capture(doc, HOST, [p.uptime_program]) or [])
        if p.backend == "zfs":
            self.check_pool(doc)
        self.check_space(doc)
        self.check_logs(doc, now)
        self.check_locks(doc)
        self.check_inventory(doc)
        return doc

    def check_pool(self, doc: ReportDocument) -> None:
        """Inspects ``zpool status`` for data errors, bad pool states and spares in use."""
        p = self.params
        zpool = p.zpool_program
        status_lines = self._capture(doc, POOL, [zpool, "status", p.pool])
        if status_lines is None:
            return
        for line in status_lines:
            stripped = line.strip()
            key, _, value = stripped.partition(":")
            value = value.strip()
            if key == "state":
                if value in FAIL_POOL_STATES:
                    doc.add(Severity.FAIL, POOL, f"pool {p.pool} is {value}")
                elif value in WARN_POOL_STATES:
                    doc.add(Severity.WARN, POOL, f"pool {p.pool} is {value}")
            elif key == "errors":
                if NO_KNOWN_DATA_ERRORS not in value:
                    doc.add(Severity.FAIL, POOL, stripped)
            elif "INUSE" in stripped.split():
                doc.add(Severity.WARN, POOL, f"spare in use: {stripped}")
        for cmd in ([zpool, "list", p.pool], [zpool, "iostat", "-v", p.pool]):
            lines = self._capture(doc, POOL, cmd)
            if lines is not None:
                doc.sections.append((" ".join(cmd[1:]), lines))
        doc.sections.append((f"status {p.pool}", status_lines))

    def check_space(self, doc: ReportDocument) -> None:
        """Flags volumes of the pool, or those holding the destination directory, whose usage exceeds the thresholds."""
        p = self.params
        lines = self._capture(doc, SPACE, [p.df_program, "-P", "-k"])
        if lines is None:
            return
        volumes: list[tuple[str, int, str, str]] = []  # (filesystem, capacity, mountpoint, line)
        for line in lines[1:]:
            parts = line.split()
            if len(parts) < 6 or not parts[4].endswith("%") or not parts[4][:-1].isdigit():
                continue
            volumes.append((parts[0], int(parts[4][:-1]), " ".join(parts[5:]), line))
        dst_dir = p.dst_dir.rstrip("/") or "/"
        holders = [mnt for _, _, mnt, _ in volumes if is_path_within(dst_dir, mnt)]
        holder = max(holders, key=len) if holders else None  # the volume that holds the destination directory
        selected: list[str] = lines[:1]
        for filesystem, capacity, mountpoint, line in volumes:
            in_pool = p.backend == "zfs" and (filesystem == p.pool or filesystem.startswith(p.pool + "/"))
            if not (in_pool or mountpoint == holder or is_path_within(mountpoint, dst_dir)):
                continue
            selected.append(line)
            if capacity > p.fail_percent:
                doc.add(Severity.FAIL, SPACE, f"{mountpoint} is at {capacity}% usage, over {p.fail_percent}%")
            elif capacity > p.warn_percent:
                doc.add(Severity.WARN, SPACE, f"{mountpoint} is at {capacity}% usage, over {p.warn_percent}%")
        doc.sections.append(("disk usage", selected))

    def check_logs(self, doc: ReportDocument, now: float) -> None:
        """Flags recent non-empty sync error logs below the destination directory."""
        p = self.params
        listing: list[str] = []
        for path in find_err_logs(p.dst_dir):
            try:
                st = os.stat(path, follow_symlinks=False)
            except FileNotFoundError:
                continue
            mtime = datetime.fromtimestamp(st.st_mtime).isoformat(sep=" ", timespec="seconds")
            listing.append(f"{st.st_size:>12} {mtime} {path}")
            if st.st_size == 0 or now - st.st_mtime > p.log_freshness_secs:
                continue
            if has_failure(path):
                doc.add(Severity.FAIL, SYNC, path)
                doc.failed_logs.append((path, [line.rstrip("\n") for line in tail(path, p.tail_lines, errors="replace")]))
        doc.sections.append((p.dst_dir, listing))

    def check_locks(self, doc: ReportDocument) -> None:
        """Flags locks of dead owners, locks held suspiciously long, and recently overridden stale locks."""
        p = self.params
        for lock in self.lock_manager.list_locks():
            if not lock.alive:
                doc.add(Severity.WARN, LOCKS, f"stale lock {lock.path}: no live process {lock.pid}")
            elif lock.age_secs > p.lock_max_secs:
                age = human_readable_duration(lock.age_secs)
                doc.add(Severity.WARN, LOCKS, f"process {lock.pid} holds {lock.path} for {age}, possibly hung")
        for marker in self.lock_manager.list_stale_markers():
            if marker.age_secs <= p.log_freshness_secs:
                doc.add(Severity.WARN, LOCKS, f"stale lock of {marker.key} was overridden: {marker.content}")

    def check_inventory(self, doc: ReportDocument) -> None:
        """Summarizes the snapshots of each target."""
        p = self.params
        try:
            inventory = self.transport.snapshot_inventory()
        except (OSError, subprocess.CalledProcessError) as e:
            doc.add(Severity.FAIL, INVENTORY, f"snapshot inventory not found: {_describe_error(e)}")
            return
        for target, names in inventory.items():
            stamps = sorted(name for name in names if TIMESTAMP_REGEX.fullmatch(name))
            archival = sum(1 for name in names if p.archival_prefix and name.startswith(p.archival_prefix))
            doc.inventory.append(
                InventoryRow(
                    target=target,
                    count=len(names),
                    archival=archival,
                    oldest=stamps[0] if stamps else "-",
                    newest=stamps[-1] if stamps else "-",
                    names=tuple(names),
                )
            )

    def _capture(self, doc: ReportDocument, category: str, cmd: list[str]) -> list[str] | None:
        """Returns the stdout lines of ``cmd``, or adds a FAIL finding and returns None if the command is unavailable."""
        try:
            proc = self.transport.run(cmd, mutating=False)
        except OSError as e:
            doc.add(Severity.FAIL, category, f"{cmd[0]} not found: {e}")
            return None
        assert proc is not None
        if proc.returncode != 0:
            stderr = stderr_to_str(proc.stderr).strip()
            if category == POOL and "no such pool" in stderr:
                doc.add(Severity.FAIL, category, f"pool {self.params.pool} not found")
            else:
                doc.add(Severity.FAIL, category, f"{list_formatter(cmd)} failed with rc {proc.returncode}: {stderr}")
            return None
        return proc.stdout.splitlines()


def _describe_error(e: BaseException) -> str:
    if isinstance(e, subprocess.CalledProcessError):
        return stderr_to_str(e.stderr).strip() or f"rc {e.returncode}"
    return str(e)


def is_path_within(path: str, parent: str) -> bool:
    """Returns True if ``path`` equals ``parent`` or lies below it."""
    parent = parent.rstrip("/")
    return path == parent or path.startswith(parent + "/") or parent == ""


def find_err_logs(dst_dir: str) -> list[str]:
    """Returns the ``*-err.txt`` files in ``dst_dir`` and in its immediate subdirectories, sorted."""

    def scan(directory: str, depth: int) -> list[str]:
        results: list[str] = []
        try:
            with os.scandir(directory) as iterator:
                entries = list(iterator)
        except (FileNotFoundError, PermissionError):
            return results
        for entry in entries:
            if entry.name == PROVENANCE_ERR_LOG:
                continue  # copy kept inside a backup
            if entry.is_file(follow_symlinks=False) and entry.name.endswith(ERR_LOG_SUFFIX):
                results.append(entry.path)
            elif depth > 0 and entry.is_dir(follow_symlinks=False):
                results += scan(entry.path, depth - 1)
        return results

    return sorted(scan(dst_dir, depth=1))


def has_failure(path: str) -> bool:
    """Returns False if the error log only contains harmless ssh chatter."""
    with open(path, "r", encoding="utf-8", errors="replace") as fd:
        lines = [line.strip() for line in fd if line.strip()]
    return any(not line.startswith(PARTIAL_SUCCESS_PREFIX) for line in lines)


def classify(doc: ReportDocument) -> Severity:
    """Returns the maximum severity over all findings."""
    return max((finding.severity for finding in doc.findings), default=Severity.OK)


def render(doc: ReportDocument) -> str:
    """Formats the report as plain text."""
    severity = classify(doc)
    out: list[str] = [f"backup server: {doc.host}", f"report date: {doc.date}", f"status: {severity.name}", ""]
    for category, title in CATEGORY_TITLES.items():
        findings = [finding for finding in doc.findings if finding.category == category]
        if not findings and category not in ALWAYS_LISTED:
            continue
        out.append(title)
        out += [f"  {finding.severity.name}: {finding.message}" for finding in findings]
        if not findings:
            out.append(f"  {ALWAYS_LISTED[category]}")
    out += ["", "UPTIME:", doc.uptime]
    for title, lines in doc.sections:
        out += ["", f"{title}:"] + lines
    for path, lines in doc.failed_logs:
        out += ["", f"{path} (last {len(lines)} lines)"] + lines
    if doc.inventory:
        out += ["", f"{'TARGET':>15} {'CNT':>4} {'ARCH':>4} {'OLDEST':<14} {'NEWEST':<14}"]
        for row in doc.inventory:
            out.append(f"{row.target:>15} {row.count:>4} {row.archival:>4} {row.oldest:<14} {row.newest:<14}".rstrip())
        for row in doc.inventory:
            out += ["", f"{row.target}:"] + [f"  {name}" for name in row.names]
    return "\n".join(out) + "\n"


def deliver(p: Params, doc: ReportDocument) -> Severity:
    """Prints the report, or mails it if a recipient is configured; returns the overall severity."""
    severity = classify(doc)
    text = render(doc)
    if not p.recipient:
        xprint(p.log, text, file=sys.stdout, end="")
        return severity
    cmd = [p.mail_program, "-s", f"backup status for {doc.host}: {severity.name}", p.recipient]
    p.log.info("Would execute: %s" if p.dry_run else "Executing: %s", list_formatter(cmd))
    if p.dry_run:
        xprint(p.log, text, file=sys.stdout, end="")
        return severity
    subprocess_run(cmd, input=text, text=True, stdout=PIPE, stderr=PIPE, check=True)
    return severity
