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
"""Documentation, definition of input data and ArgumentParser used by the 'rzbackup' CLI."""

from __future__ import (
    annotations,
)
import argparse
from typing import (
    Final,
)

from rzbackup_main.argparse_actions import (
    HostNameAction,
    NonEmptyStringAction,
    PoolNameAction,
    SafeDirectoryNameAction,
    SafeFileNameAction,
    SafeFilePathAction,
)
from rzbackup_main.util.check_range import (
    CheckRange,
)
from rzbackup_main.util.utils import (
    ENV_VAR_PREFIX,
    PROG_NAME,
)

# constants:
__version__: Final[str] = "1.0.0"
LOG_DIR_DEFAULT: Final[str] = PROG_NAME + "-logs"
BACKUP_TYPES: Final[tuple[str, str, str]] = ("hourly", "daily", "monthly")
BACKENDS: Final[tuple[str, str]] = ("zfs", "hardlink")


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by rzbackup."""
    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=PROG_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{PROG_NAME} pulls periodic backups of remote hosts onto a backup server via rsync over ssh, keeps a rolling
retention of point-in-time copies, reaps aged copies and reports on the health of the backup server.*

Two storage backends are supported. With the 'zfs' backend each host is synced into its own ZFS dataset
`<pool>/<host>` (mounted at `<dst-dir>/<host>`) and every successful sync is frozen as a snapshot named after
the local time of its creation, e.g. `backup/alpha@20230101000000`. With the 'hardlink' backend each host gets
numbered generation directories `<dst-dir>/<host>/<type>.0 .. <type>.N` where unchanged files are shared between
generations via hard links, and `<type>.0` is always the most recent generation.

Targets are declared in a flat targets file, one line per host:

```[user@]host[:tunnel] [src_path [dst_path]] [max_age=SECONDS]```

Lines starting with '#' are comments. A host written as `host:tunnel` is reached through an ssh tunnel via the
configured tunnel gateway.

Settings are taken from (in decreasing precedence) the CLI options, the defaults file (shell style KEY=VALUE lines,
e.g. /etc/default/{PROG_NAME}, which is parsed but never executed), and built-in defaults.

Concurrent runs against the same target are prevented by per-target lock files that contain the process id of
the owner. A lock whose owner is no longer alive is considered stale and is overridden with a warning.

# Quickstart

* Back up all hosts listed in the targets file, keeping 30 daily generations or snapshots:

```$ {PROG_NAME} backup daily```

* Back up a single host through the ssh tunnel gateway, printing what would happen without changing anything:

```$ {PROG_NAME} --dryrun backup hourly root@alpha:tunnel /home```

* Delete snapshots of host 'alpha' that are older than 7 days, except archival snapshots whose names start with
'save':

```$ {PROG_NAME} reap alpha 604800```

* Mail a status report of the backup server; the exit code is 0, 1 or 2 for OK, WARN or FAIL:

```$ {PROG_NAME} report --recipient root@example.com```

# Exit Codes

0 on success, 1 if the status report is WARN, 2 if the status report is FAIL, 3 on invalid configuration or if at
least one target failed, 4 if a target was skipped because a previous run is still holding its lock.
""")

    _add_common_arguments(parser, is_subparser=False)
    parser.add_argument(
        "--version", action="version", version=f"{PROG_NAME}-{__version__}",
        help="Display version information and exit.\n\n")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    backup_parser = subparsers.add_parser(
        "backup", formatter_class=argparse.RawTextHelpFormatter, allow_abbrev=False,
        help="Sync targets into a new generation or snapshot and rotate older ones.\n\n")
    _add_common_arguments(backup_parser, is_subparser=True)
    backup_parser.add_argument(
        "backup_type", choices=BACKUP_TYPES,
        help="The retention class of this run. Each class has its own keep count and, with the 'hardlink' backend, its "
             "own set of generation directories.\n\n")
    backup_parser.add_argument(
        "target", nargs="*", metavar="TARGET",
        help="One target line in the same format as the targets file, e.g. `root@alpha /home /backup`. If absent, all "
             "targets of the targets file are backed up, one after another.\n\n")
    backup_parser.add_argument(
        "--targets-file", default=None, action=SafeFilePathAction, metavar="FILE",
        help="Path of the targets file. Default: BACKUP_TARGETS_FILE, else `<BACKUP_CFG_DIR>/targets`.\n\n")
    backup_parser.add_argument(
        "--excludes-file", default=None, action=SafeFilePathAction, metavar="FILE",
        help="Path of the global rsync excludes file. A host specific file `excludes.<host>` in the same directory is "
             "applied in addition if it exists. Default: BACKUP_EXCLUDES_FILE, else `<BACKUP_CFG_DIR>/excludes`.\n\n")
    backup_parser.add_argument(
        "--pool", default=None, action=PoolNameAction, metavar="NAME",
        help="Name of the ZFS pool that holds one dataset per host (zfs backend only). Default: BACKUP_POOL, "
             "else 'backup'.\n\n")
    backup_parser.add_argument(
        "--dst-dir", default=None, action=SafeDirectoryNameAction, metavar="DIR",
        help="Default destination directory for targets that do not specify one. Default: BACKUP_DST_DIR, "
             "else '/backup'.\n\n")
    backup_parser.add_argument(
        "--keyfile", default=None, action=SafeFilePathAction, metavar="FILE",
        help="Private ssh key used to log into the source hosts. Default: BACKUP_KEYFILE, "
             "else none, i.e. the default identities of ssh.\n\n")
    backup_parser.add_argument(
        "--keep", type=int, min=1, default=None, action=CheckRange, metavar="INT",
        help="Number of generations to keep in addition to the newest one (hardlink backend). Default: "
             "NUM_HOURLY_SNAPSHOTS=24, NUM_DAILY_SNAPSHOTS=30, NUM_MONTHLY_SNAPSHOTS=3 depending on the backup type.\n\n")

    reap_parser = subparsers.add_parser(
        "reap", formatter_class=argparse.RawTextHelpFormatter, allow_abbrev=False,
        help="Delete snapshots that are older than the maximum age (zfs backend only).\n\n")
    _add_common_arguments(reap_parser, is_subparser=True)
    reap_parser.add_argument(
        "host", nargs="?", default=None, action=HostNameAction, metavar="HOST",
        help="Reap only the snapshots of this host. If absent, reap all hosts of the targets file, each with its own "
             "max_age= setting.\n\n")
    reap_parser.add_argument(
        "max_age", nargs="?", type=int, default=None, metavar="MAX_AGE_SECONDS",
        help="Snapshots older than this many seconds are deleted. Default: BACKUP_MAX_AGE, else 2592000 (30 days).\n\n")
    reap_parser.add_argument(
        "--targets-file", default=None, action=SafeFilePathAction, metavar="FILE",
        help="Path of the targets file that lists the hosts to reap when no HOST is given.\n\n")
    reap_parser.add_argument(
        "--pool", default=None, action=PoolNameAction, metavar="NAME",
        help="Name of the ZFS pool that holds one dataset per host. Default: BACKUP_POOL, else 'backup'.\n\n")
    reap_parser.add_argument(
        "--archival-prefix", default=None, action=NonEmptyStringAction, metavar="STRING",
        help="Snapshots whose name starts with this prefix are archival and never reaped. Default: "
             "BACKUP_ARCHIVAL_PREFIX, else 'save'.\n\n")

    report_parser = subparsers.add_parser(
        "report", formatter_class=argparse.RawTextHelpFormatter, allow_abbrev=False,
        help="Check pool health, space usage, locks, recent sync failures and snapshots, and print or mail the "
             "result.\n\n")
    _add_common_arguments(report_parser, is_subparser=True)
    report_parser.add_argument(
        "--pool", default=None, action=PoolNameAction, metavar="NAME",
        help="Name of the ZFS pool to report on. Default: BACKUP_POOL, else 'backup'.\n\n")
    report_parser.add_argument(
        "--recipient", default=None, action=NonEmptyStringAction, metavar="ADDRESS",
        help="Mail the report to this address instead of printing it to stdout. Default: REPORT_RECIPIENT, else "
             "print.\n\n")
    report_parser.add_argument(
        "--dst-dir", default=None, action=SafeDirectoryNameAction, metavar="DIR",
        help="Directory that holds the per host sync logs. Default: BACKUP_DST_DIR, else '/backup'.\n\n")
    report_parser.add_argument(
        "--warn-percent", type=int, min=0, max=100, default=None, action=CheckRange, metavar="INT",
        help="Space usage above this percentage is reported as WARN. Default: REPORT_WARN_PERCENT, else 90 "
             "(min=%(min)s, max=%(max)s).\n\n")
    report_parser.add_argument(
        "--fail-percent", type=int, min=0, max=100, default=None, action=CheckRange, metavar="INT",
        help="Space usage above this percentage is reported as FAIL. Default: REPORT_FAIL_PERCENT, else 98 "
             "(min=%(min)s, max=%(max)s).\n\n")
    report_parser.add_argument(
        "--log-freshness-secs", type=int, min=1, default=None, action=CheckRange, metavar="INT",
        help="Only error logs modified within this many seconds count as recent sync failures. Default: "
             "REPORT_LOG_FRESHNESS_SECS, else 86400.\n\n")
    report_parser.add_argument(
        "--lock-max-secs", type=int, min=1, default=None, action=CheckRange, metavar="INT",
        help="A lock held by a live process for longer than this many seconds is reported as a possible hang. Default: "
             "REPORT_LOCK_MAX_SECS, else 86400.\n\n")
    report_parser.add_argument(
        "--tail-lines", type=int, min=1, default=None, action=CheckRange, metavar="INT",
        help="Number of trailing lines of each failing error log to include. Default: REPORT_TAIL_LINES, else 3.\n\n")
    return parser
    # fmt: on


def _add_common_arguments(parser: argparse.ArgumentParser, is_subparser: bool) -> None:
    """Adds the options shared by all subcommands, so they may appear before or after the subcommand name; within a
    subparser the defaults are suppressed so that they do not overwrite values given before the subcommand."""

    def default(value: object) -> object:
        return argparse.SUPPRESS if is_subparser else value

    # fmt: off
    parser.add_argument(
        "--defaults-file", default=default(None), action=SafeFilePathAction, metavar="FILE",
        help=f"Shell style file of KEY=VALUE settings. Default: ${ENV_VAR_PREFIX}defaults_file, else the first existing "
             f"of /etc/default/{PROG_NAME} and /etc/defaults/{PROG_NAME}.\n\n")
    parser.add_argument(
        "--backend", choices=BACKENDS, default=default(None),
        help="Storage backend for retention. Default: BACKUP_BACKEND, else 'zfs'.\n\n")
    parser.add_argument(
        "--dryrun", "-n", action="store_true", default=default(False),
        help="Do a dry run (aka 'no-op') to print what operations would happen if the command were to be executed "
             "for real. Read-only commands such as the reachability probe and listing snapshots still run.\n\n")
    parser.add_argument(
        "--verbose", "-v", action="count", default=default(0),
        help="Print verbose information. This option can be specified multiple times to increase the level of "
             "verbosity. ERROR, WARN, INFO, DEBUG, TRACE output lines are identified by [E], [W], [I], [D], [T] "
             "prefixes, respectively.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true", default=default(False),
        help="Suppress non-error, info, debug, and trace output.\n\n")
    parser.add_argument(
        "--log-dir", default=default(None), action=SafeDirectoryNameAction, metavar="DIR",
        help=f"Path to the log output directory on local host. Default: $HOME/{LOG_DIR_DEFAULT}. The basename of "
             f"--log-dir must contain the substring '{LOG_DIR_DEFAULT}' as this helps prevent accidents.\n\n")
    parser.add_argument(
        "--log-file-prefix", default=default("zrun_"), action=SafeFileNameAction, metavar="STRING",
        help="The path name of the log file on local host is "
             "`${--log-dir}/<date>/${--log-file-prefix}<timestamp>_<command>-<random>.log`. Default is 'zrun_'.\n\n")
    parser.add_argument(
        "--log-syslog-address", default=default(None), action=NonEmptyStringAction, metavar="STRING",
        help="Host:port of the syslog machine to send messages to (e.g. 'foo.example.com:514' or '127.0.0.1:514'), or "
             "the file system path to the syslog socket file on localhost (e.g. '/dev/log'). The default is no "
             "address, i.e. do not log anything to syslog by default.\n\n")
    parser.add_argument(
        "--log-syslog-socktype", choices=["UDP", "TCP"], default=default("UDP"),
        help="The socket type to use to connect if no local socket file system path is used. Default is 'UDP'.\n\n")
    parser.add_argument(
        "--log-syslog-facility", type=int, min=0, max=7, default=default(1), action=CheckRange, metavar="INT",
        help="The local facility aka category that identifies msg sources in syslog (default: 1, min=%(min)s, "
             "max=%(max)s).\n\n")
    parser.add_argument(
        "--log-syslog-prefix", default=default(PROG_NAME), action=NonEmptyStringAction, metavar="STRING",
        help=f"The name to prepend to each message that is sent to syslog; identifies {PROG_NAME} messages as opposed "
             f"to messages from other sources. Default is '{PROG_NAME}'.\n\n")
    parser.add_argument(
        "--log-syslog-level", choices=["CRITICAL", "ERROR", "WARN", "INFO", "DEBUG", "TRACE"], default=default("ERROR"),
        help="Only send messages with equal or higher priority than this log level to syslog. Default is 'ERROR'.\n\n")
    # fmt: on
