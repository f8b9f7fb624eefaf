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
"""Logging helpers that build default and syslog-enabled loggers; Centralizes logger setup so that the backup, reap and
report subcommands share uniform formatting and configuration.

Each rzbackup.Job has its own separate Logger object that is not registered with the global logging manager. Callers are
responsible for closing any loggers they own via ``reset_logger()``.
"""

from __future__ import (
    annotations,
)
import argparse
import contextlib
import logging
import sys
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    TYPE_CHECKING,
    Any,
    Final,
)

from rzbackup_main.util.utils import (
    LOG_STDERR,
    LOG_STDOUT,
    LOG_TRACE,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from rzbackup_main.configuration import (
        LogParams,
    )

LOGGER_NAME: Final[str] = "rzbackup_main.rzbackup"


def reset_logger(log: Logger) -> None:
    """Removes and closes logging handlers (and closes their files) and resets logger to default state."""
    for handler in log.handlers.copy():
        log.removeHandler(handler)
        with contextlib.suppress(BrokenPipeError):
            handler.flush()
        handler.close()
    for _filter in log.filters.copy():
        log.removeFilter(_filter)
    log.setLevel(logging.NOTSET)
    log.propagate = True


def get_logger(log_params: LogParams, args: argparse.Namespace, log: Logger | None = None) -> Logger:
    """Returns a logger configured from CLI arguments or an optional base logger."""
    set_logging_runtime_defaults()
    if log is not None:
        assert isinstance(log, Logger)
        return log  # use third party provided logger object
    return _get_default_logger(log_params, args)


def set_logging_runtime_defaults() -> None:
    """Registers the custom log levels and tells the logging framework not to gather unnecessary info per record."""
    logging.addLevelName(LOG_TRACE, "TRACE")
    logging.addLevelName(LOG_STDERR, "STDERR")
    logging.addLevelName(LOG_STDOUT, "STDOUT")
    logging.logProcesses = False
    logging.logThreads = False
    logging.logMultiprocessing = False


def _get_default_logger(log_params: LogParams, args: argparse.Namespace) -> Logger:
    """Creates the default logger with stream, file and optional syslog handlers."""
    log = Logger(LOGGER_NAME + "." + log_params.logger_name_suffix)  # noqa: LOG001 not registered with Logger.manager
    log.setLevel(log_params.log_level)
    log.propagate = False  # don't propagate log messages up to the root logger to avoid emitting duplicate messages

    handler: logging.Handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(get_default_log_formatter())
    handler.setLevel(log_params.log_level)
    log.addHandler(handler)

    handler = logging.FileHandler(log_params.log_file, encoding="utf-8")
    handler.setFormatter(get_default_log_formatter())
    handler.setLevel(log_params.log_level)
    log.addHandler(handler)

    address = args.log_syslog_address
    if address:  # optionally, also log to local or remote syslog
        from logging import handlers  # lazy import for startup perf

        address, socktype = _get_syslog_address(address, args.log_syslog_socktype)
        log_syslog_prefix = str(args.log_syslog_prefix).strip().replace("%", "")  # sanitize
        handler = handlers.SysLogHandler(address=address, facility=args.log_syslog_facility, socktype=socktype)
        handler.setFormatter(get_default_log_formatter(prefix=log_syslog_prefix + " "))
        handler.setLevel(args.log_syslog_level)
        log.addHandler(handler)
        if handler.level < log.getEffectiveLevel():
            log_level_name: str = logging.getLevelName(log.getEffectiveLevel())
            log.warning(
                "%s",
                f"No messages with priority lower than {log_level_name} will be sent to syslog because syslog "
                f"log level {args.log_syslog_level} is lower than overall log level {log_level_name}.",
            )
    return log


LOG_LEVEL_PREFIXES: Final[dict[int, str]] = {
    logging.CRITICAL: "[C] CRITICAL:",
    logging.ERROR: "[E] ERROR:",
    logging.WARNING: "[W]",
    logging.INFO: "[I]",
    logging.DEBUG: "[D]",
    LOG_TRACE: "[T]",
}


def get_default_log_formatter(prefix: str = "") -> logging.Formatter:
    """Returns a formatter for rzbackup logs with optional prefix; output of external commands is emitted as-is."""
    level_prefixes_: dict[int, str] = LOG_LEVEL_PREFIXES.copy()

    class DefaultLogFormatter(logging.Formatter):
        """Formatter adding timestamps and level prefix."""

        def format(self, record: logging.LogRecord) -> str:
            levelno: int = record.levelno
            if levelno in (LOG_STDERR, LOG_STDOUT):
                return prefix + super().format(record)
            timestamp: str = datetime.now().isoformat(sep=" ", timespec="seconds")  # 2024-09-03 12:26:15
            ts_level: str = f"{timestamp} {level_prefixes_.get(levelno, '')} "
            msg: str = ts_level + str(record.msg)
            if record.exc_info or record.exc_text or record.stack_info:
                record.msg = msg
                msg = super().format(record)
            elif record.args:
                msg = msg % record.args
            return prefix + msg

    return DefaultLogFormatter()


def get_simple_logger(program: str) -> Logger:
    """Returns a minimal logger for use before the real logger exists, e.g. while the log dir is being validated."""

    level_prefixes_: dict[int, str] = LOG_LEVEL_PREFIXES.copy()

    class LevelFormatter(logging.Formatter):
        """Injects level prefix and program name into log records."""

        def format(self, record: logging.LogRecord) -> str:
            record.level_prefix = level_prefixes_.get(record.levelno, "")
            record.program = program
            return super().format(record)

    set_logging_runtime_defaults()
    log = Logger(program)  # noqa: LOG001 do not register logger with Logger.manager to avoid potential memory leak
    log.setLevel(logging.INFO)
    log.propagate = False
    handler = logging.StreamHandler()
    handler.setFormatter(
        LevelFormatter(fmt="%(asctime)s %(level_prefix)s [%(program)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )
    log.addHandler(handler)
    return log


def _get_syslog_address(address: str, log_syslog_socktype: str) -> tuple[str | tuple[str, int], Any]:
    """Normalizes syslog address to tuple form and returns socket type."""
    import socket  # lazy import for startup perf

    address = address.strip()
    if ":" in address:
        host, port_str = address.rsplit(":", 1)
        addr = (host.strip(), int(port_str.strip()))
        socktype: socket.SocketKind = socket.SOCK_DGRAM if log_syslog_socktype == "UDP" else socket.SOCK_STREAM  # for TCP
        return addr, socktype
    return address, None
