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
"""Configuration subsystem; All CLI option/parameter values, the shell style defaults file and the targets file are
reachable from the "Params" class, which is constructed once per run and then passed by reference to every component.

Settings are resolved in decreasing precedence from the CLI options, the defaults file and the built-in defaults. The
defaults file uses POSIX shell assignment syntax (``KEY=VALUE``, quotes, ``#`` comments, optional ``export``) but is only
parsed, never executed.
"""

from __future__ import (
    annotations,
)
import argparse
import os
import re
import shlex
import socket
import string
import tempfile
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
    Final,
    final,
)

from rzbackup_main.argparse_actions import (
    is_valid_host_name,
)
from rzbackup_main.argparse_cli import (
    BACKENDS,
    BACKUP_TYPES,
    LOG_DIR_DEFAULT,
)
from rzbackup_main.errors import (
    INVALID_TARGET,
    BackupError,
)
from rzbackup_main.util.utils import (
    DIR_PERMISSIONS,
    FILE_PERMISSIONS,
    PROG_NAME,
    die,
    get_home_directory,
    getenv_any,
    validate_file_permissions,
    validate_is_not_a_symlink,
)

# constants:
DEFAULTS_FILE_CANDIDATES: Final[tuple[str, str]] = (f"/etc/default/{PROG_NAME}", f"/etc/defaults/{PROG_NAME}")
BUILTIN_DEFAULTS: Final[dict[str, str]] = {
    "BACKUP_CFG_DIR": f"/etc/{PROG_NAME}",
    "BACKUP_TARGETS_FILE": "",  # empty means ${BACKUP_CFG_DIR}/targets
    "BACKUP_EXCLUDES_FILE": "",  # empty means ${BACKUP_CFG_DIR}/excludes
    "BACKUP_BACKEND": "zfs",
    "BACKUP_POOL": "backup",
    "BACKUP_USER": "bup",
    "BACKUP_SRC_DIR": "/",
    "BACKUP_DST_DIR": "/backup",
    "BACKUP_KEYFILE": "",
    "BACKUP_USE_REMOTE_SUDO": "false",
    "BACKUP_USE_USERNAME_IN_ID": "false",
    "BACKUP_LOCKFILE": f"/var/run/{PROG_NAME}",
    "BACKUP_MAX_AGE": "2592000",  # 30 days
    "BACKUP_ARCHIVAL_PREFIX": "save",
    "NUM_HOURLY_SNAPSHOTS": "24",
    "NUM_DAILY_SNAPSHOTS": "30",
    "NUM_MONTHLY_SNAPSHOTS": "3",
    "TUNNEL_HOST": "gateway",
    "TUNNEL_USER": "backup",
    "TUNNEL_PORT": "2222",
    "TUNNEL_WAIT_SECS": "30",
    "REPORT_RECIPIENT": "",
    "REPORT_WARN_PERCENT": "90",
    "REPORT_FAIL_PERCENT": "98",
    "REPORT_LOG_FRESHNESS_SECS": "86400",
    "REPORT_LOCK_MAX_SECS": "86400",
    "REPORT_TAIL_LINES": "3",
    "RSYNC": "rsync",
    "SSH": "ssh",
    "ZFS": "zfs",
    "ZPOOL": "zpool",
    "DF": "df",
    "MAIL": "mail",
    "UPTIME": "uptime",
}
_TRUE_VALUES: Final[frozenset[str]] = frozenset(["1", "true", "yes", "on", "y"])
_FALSE_VALUES: Final[frozenset[str]] = frozenset(["", "0", "false", "no", "off", "n"])
_KEY_REGEX: Final[re.Pattern[str]] = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
TUNNEL_SUFFIX: Final[str] = "tunnel"
MAX_AGE_PREFIX: Final[str] = "max_age="


#############################################################################
@final
class LogParams:
    """Option values for logging."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        if args.quiet:
            log_level: str = "ERROR"
        elif args.verbose >= 2:
            log_level = "TRACE"
        elif args.verbose >= 1:
            log_level = "DEBUG"
        else:
            log_level = "INFO"
        self.log_level: Final[str] = log_level
        self.timestamp: Final[str] = datetime.now().isoformat(sep="_", timespec="seconds")  # 2024-09-03_12:26:15
        self.quiet: Final[bool] = args.quiet
        self.home_dir: Final[str] = get_home_directory()
        log_parent_dir: Final[str] = args.log_dir if args.log_dir else os.path.join(self.home_dir, LOG_DIR_DEFAULT)
        if LOG_DIR_DEFAULT not in os.path.basename(log_parent_dir):
            die(f"Basename of --log-dir must contain the substring '{LOG_DIR_DEFAULT}', but got: {log_parent_dir}")
        self.log_dir: Final[str] = os.path.join(log_parent_dir, self.timestamp[0 : self.timestamp.index("_")])  # daily
        os.makedirs(log_parent_dir, mode=DIR_PERMISSIONS, exist_ok=True)
        validate_is_not_a_symlink("--log-dir ", log_parent_dir)
        validate_file_permissions(log_parent_dir, DIR_PERMISSIONS)
        os.makedirs(self.log_dir, mode=DIR_PERMISSIONS, exist_ok=True)
        validate_is_not_a_symlink("--log-dir subdir ", self.log_dir)
        validate_file_permissions(self.log_dir, DIR_PERMISSIONS)
        self.log_file_prefix: Final[str] = args.log_file_prefix
        fd, self.log_file = tempfile.mkstemp(
            suffix=".log",
            prefix=f"{self.log_file_prefix}{self.timestamp}_{args.command}-",
            dir=self.log_dir,
        )
        os.fchmod(fd, FILE_PERMISSIONS)
        os.close(fd)
        log_file_stem: str = os.path.basename(self.log_file)[0 : -len(".log")]
        # Python's standard logger naming API interprets chars such as '.', '-', ':', spaces, etc in special ways
        self.logger_name_suffix: Final[str] = re.sub(r"[^A-Za-z0-9_]", repl="_", string=log_file_stem)

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
@dataclass(frozen=True)
@final
class Target:
    """One host to back up, as declared by one line of the targets file or by the CLI."""

    user: str
    host: str
    src_path: str
    dst_dir: str
    tunnel: bool = False
    max_age: int | None = None  # per target override of BACKUP_MAX_AGE, used by the reaper

    @property
    def user_host(self) -> str:
        return f"{self.user}@{self.host}"

    def __str__(self) -> str:
        suffix = ":" + TUNNEL_SUFFIX if self.tunnel else ""
        return f"{self.user_host}{suffix} {self.src_path} {self.dst_dir}"


def parse_target(
    tokens: list[str], default_user: str, default_src_dir: str, default_dst_dir: str, location: str = "CLI"
) -> Target:
    """Parses ``[user@]host[:tunnel] [src_path [dst_path]] [max_age=SECONDS]``; raises BackupError(invalid_target) with
    ``location`` on bad input.

    A purely numeric second column is interpreted as max age in seconds, for compatibility with reaper target files that
    list ``host max_age`` pairs.
    """
    if not tokens:
        raise BackupError(INVALID_TARGET, f"{location}: Missing target")

    def invalid(msg: str) -> BackupError:
        return BackupError(INVALID_TARGET, f"{location}: {msg}", tokens[0])

    max_age: int | None = None
    paths: list[str] = []
    for i, token in enumerate(tokens[1:]):
        value: str | None = None
        if token.startswith(MAX_AGE_PREFIX):
            value = token[len(MAX_AGE_PREFIX) :]
        elif i == 0 and token.isdigit():
            value = token
        if value is None:
            paths.append(token)
        elif not value.isdigit():
            raise invalid(f"Invalid max_age in target: {token}")
        else:
            max_age = int(value)
    if len(paths) > 2:
        raise invalid(f"Too many columns in target: {' '.join(tokens)}")

    user_host, tunnel_sep, tunnel = tokens[0].partition(":")
    if tunnel_sep and tunnel != TUNNEL_SUFFIX:
        raise invalid(f"Invalid tunnel suffix in target, must be 'host:{TUNNEL_SUFFIX}': {tokens[0]}")
    user, sep, host = user_host.rpartition("@")
    if not sep:
        user = default_user
    if not user or not is_valid_host_name(user):
        raise invalid(f"Invalid user in target: {tokens[0]}")
    if not is_valid_host_name(host):
        raise invalid(f"Invalid host name in target: {tokens[0]}")
    src_path = paths[0] if len(paths) >= 1 else default_src_dir
    dst_dir = paths[1] if len(paths) >= 2 else default_dst_dir
    if not os.path.isabs(dst_dir):
        raise invalid(f"Destination directory must be an absolute path: {dst_dir}")
    return Target(user=user, host=host, src_path=src_path, dst_dir=dst_dir, tunnel=bool(tunnel_sep), max_age=max_age)


def read_targets_file(path: str, default_user: str, default_src_dir: str, default_dst_dir: str) -> list[Target]:
    """Returns the targets declared in ``path``, skipping blank lines and comment lines that start with '#'."""
    targets: list[Target] = []
    try:
        with open(path, "r", encoding="utf-8") as fd:
            for lineno, line in enumerate(fd, start=1):
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                location = f"{path}:{lineno}"
                try:
                    tokens = shlex.split(line, comments=True)
                except ValueError as e:
                    raise BackupError(INVALID_TARGET, f"{location}: {e}") from e
                targets.append(parse_target(tokens, default_user, default_src_dir, default_dst_dir, location))
    except FileNotFoundError:
        die(f"Targets file not found: {path}")
    return targets


def read_defaults_file(path: str, log: Logger | None = None) -> dict[str, str]:
    """Parses a shell style defaults file without executing it; ``$VAR`` and ``${VAR}`` references to settings defined
    earlier (in the file or built in) are expanded, anything else is kept literally."""
    settings: dict[str, str] = {}
    with open(path, "r", encoding="utf-8") as fd:
        lines = fd.readlines()
    for lineno, line in enumerate(lines, start=1):
        location = f"{path}:{lineno}"
        try:
            tokens = shlex.split(line, comments=True)
        except ValueError as e:
            die(f"{location}: {e}")
        if tokens and tokens[0] == "export":
            tokens = tokens[1:]
        for token in tokens:
            key, sep, value = token.partition("=")
            if not sep or not _KEY_REGEX.fullmatch(key):
                die(f"{location}: Expected KEY=VALUE but got: {token}")
            value = string.Template(value).safe_substitute({**BUILTIN_DEFAULTS, **settings})
            if key not in BUILTIN_DEFAULTS and log is not None:
                log.warning("%s", f"{location}: Ignoring unknown setting: {key}")
            settings[key] = value
    return {key: value for key, value in settings.items() if key in BUILTIN_DEFAULTS}


def find_defaults_file(args: argparse.Namespace) -> str | None:
    """Returns the explicitly requested defaults file, or the first existing system defaults file, or None."""
    path = getattr(args, "defaults_file", None) or getenv_any("defaults_file")
    if path:
        if not os.path.isfile(path):
            die(f"Defaults file not found: {path}")
        return path
    return next((candidate for candidate in DEFAULTS_FILE_CANDIDATES if os.path.isfile(candidate)), None)


def parse_bool(key: str, value: str) -> bool:
    """Parses shell style booleans; dies on anything unrecognized."""
    value = value.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    die(f"Invalid boolean value for {key}: {value!r}")


def parse_int(key: str, value: str, min_value: int = 0, max_value: int | None = None) -> int:
    """Parses an int setting and checks its range; dies on bad input."""
    try:
        result = int(value.strip())
    except ValueError:
        die(f"Invalid integer value for {key}: {value!r}")
    if result < min_value or (max_value is not None and result > max_value):
        upper = "+infinity)" if max_value is None else f"{max_value}]"
        die(f"Invalid value for {key}: {result}, valid range: [{min_value}, {upper}")
    return result


#############################################################################
@final
class TunnelConfig:
    """Where and how to open ssh tunnels for targets written as ``host:tunnel``."""

    def __init__(self, host: str, user: str, port: int, wait_secs: int) -> None:
        self.host: Final[str] = host
        self.user: Final[str] = user
        self.port: Final[int] = port
        self.wait_secs: Final[int] = wait_secs

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
@final
class Params:
    """All parsed CLI options combined with the defaults file into a single bundle; simplifies passing around numerous
    settings and defaults."""

    def __init__(
        self,
        args: argparse.Namespace,
        sys_argv: list[str],
        log_params: LogParams,
        log: Logger,
    ) -> None:
        """Option values for all aspects; reads from ArgumentParser via args and from the defaults file."""
        # immutable variables:
        assert args is not None
        assert isinstance(sys_argv, list)
        assert log_params is not None
        assert log is not None
        self.args: Final[argparse.Namespace] = args
        self.sys_argv: Final[list[str]] = sys_argv
        self.log_params: Final[LogParams] = log_params
        self.log: Final[Logger] = log
        self.command: Final[str] = args.command
        self.defaults_file: Final[str | None] = find_defaults_file(args)
        settings: dict[str, str] = dict(BUILTIN_DEFAULTS)
        if self.defaults_file is not None:
            log.debug("Reading defaults file: %s", self.defaults_file)
            settings.update(read_defaults_file(self.defaults_file, log))
        self.settings: Final[dict[str, str]] = settings

        def option(name: str) -> str | None:
            return getattr(args, name, None)

        self.dry_run: Final[bool] = args.dryrun
        backend: str = args.backend or settings["BACKUP_BACKEND"]
        if backend not in BACKENDS:
            die(f"Invalid value for BACKUP_BACKEND: {backend!r}, must be one of {', '.join(BACKENDS)}")
        self.backend: Final[str] = backend
        self.cfg_dir: Final[str] = settings["BACKUP_CFG_DIR"]
        self.targets_file: Final[str] = (
            option("targets_file") or settings["BACKUP_TARGETS_FILE"] or os.path.join(self.cfg_dir, "targets")
        )
        self.excludes_file: Final[str] = (
            option("excludes_file") or settings["BACKUP_EXCLUDES_FILE"] or os.path.join(self.cfg_dir, "excludes")
        )
        self.pool: Final[str] = option("pool") or settings["BACKUP_POOL"]
        self.user: Final[str] = settings["BACKUP_USER"]
        self.src_dir: Final[str] = settings["BACKUP_SRC_DIR"]
        self.dst_dir: Final[str] = option("dst_dir") or settings["BACKUP_DST_DIR"]
        self.keyfile: Final[str] = option("keyfile") or settings["BACKUP_KEYFILE"]
        self.use_remote_sudo: Final[bool] = parse_bool("BACKUP_USE_REMOTE_SUDO", settings["BACKUP_USE_REMOTE_SUDO"])
        self.use_username_in_id: Final[bool] = parse_bool(
            "BACKUP_USE_USERNAME_IN_ID", settings["BACKUP_USE_USERNAME_IN_ID"]
        )
        self.lock_base: Final[str] = settings["BACKUP_LOCKFILE"]
        max_age = option("max_age")
        self.max_age: Final[int] = (
            parse_int("BACKUP_MAX_AGE", settings["BACKUP_MAX_AGE"])
            if max_age is None
            else parse_int("MAX_AGE", str(max_age))
        )
        self.archival_prefix: Final[str] = option("archival_prefix") or settings["BACKUP_ARCHIVAL_PREFIX"]
        self.keep_counts: Final[dict[str, int]] = {
            backup_type: parse_int(key, settings[key], min_value=1)
            for backup_type, key in zip(
                BACKUP_TYPES, ("NUM_HOURLY_SNAPSHOTS", "NUM_DAILY_SNAPSHOTS", "NUM_MONTHLY_SNAPSHOTS")
            )
        }
        self.keep: Final[int | None] = getattr(args, "keep", None)
        self.backup_type: Final[str | None] = getattr(args, "backup_type", None)
        self.tunnel: Final[TunnelConfig] = TunnelConfig(
            host=settings["TUNNEL_HOST"],
            user=settings["TUNNEL_USER"],
            port=parse_int("TUNNEL_PORT", settings["TUNNEL_PORT"], min_value=1, max_value=65535),
            wait_secs=parse_int("TUNNEL_WAIT_SECS", settings["TUNNEL_WAIT_SECS"]),
        )
        self.recipient: Final[str] = option("recipient") or settings["REPORT_RECIPIENT"]

        def int_option(name: str, key: str, min_value: int = 0, max_value: int | None = None) -> int:
            value = getattr(args, name, None)
            return parse_int(key, settings[key], min_value, max_value) if value is None else value

        self.warn_percent: Final[int] = int_option("warn_percent", "REPORT_WARN_PERCENT", max_value=100)
        self.fail_percent: Final[int] = int_option("fail_percent", "REPORT_FAIL_PERCENT", max_value=100)
        if self.warn_percent > self.fail_percent:
            die(f"Warn threshold {self.warn_percent}% must not exceed fail threshold {self.fail_percent}%")
        self.log_freshness_secs: Final[int] = int_option("log_freshness_secs", "REPORT_LOG_FRESHNESS_SECS", min_value=1)
        self.lock_max_secs: Final[int] = int_option("lock_max_secs", "REPORT_LOCK_MAX_SECS", min_value=1)
        self.tail_lines: Final[int] = int_option("tail_lines", "REPORT_TAIL_LINES", min_value=1)
        self.rsync_program: Final[str] = settings["RSYNC"]
        self.ssh_program: Final[str] = settings["SSH"]
        self.zfs_program: Final[str] = settings["ZFS"]
        self.zpool_program: Final[str] = settings["ZPOOL"]
        self.df_program: Final[str] = settings["DF"]
        self.mail_program: Final[str] = settings["MAIL"]
        self.uptime_program: Final[str] = settings["UPTIME"]
        self.hostname: Final[str] = socket.gethostname()

    def keep_count(self, backup_type: str) -> int:
        """Returns the number of generations to keep besides the newest one for the given backup type."""
        return self.keep if self.keep is not None else self.keep_counts[backup_type]

    def targets(self, tokens: list[str] | None = None) -> list[Target]:
        """Returns the single target given on the CLI, or else all targets of the targets file."""
        if tokens:
            return [parse_target(tokens, self.user, self.src_dir, self.dst_dir)]
        return read_targets_file(self.targets_file, self.user, self.src_dir, self.dst_dir)

    def target_dir(self, target: Target) -> str:
        """Returns the directory that holds all backups of the given target."""
        name = target.user_host if self.use_username_in_id and self.backend == "hardlink" else target.host
        return os.path.join(target.dst_dir, name)

    def __repr__(self) -> str:
        return str(self.__dict__)
