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
"""Unit tests for logging configuration utilities."""

from __future__ import (
    annotations,
)
import argparse
import logging
import os
import socket
import sys
import unittest
from logging import (
    Logger,
)
from unittest.mock import (
    patch,
)

from rzbackup_main import (
    argparse_cli,
)
from rzbackup_main.configuration import (
    LogParams,
)
from rzbackup_main.loggers import (
    LOG_LEVEL_PREFIXES,
    _get_default_logger,
    _get_syslog_address,
    get_default_log_formatter,
    get_logger,
    get_simple_logger,
    reset_logger,
    set_logging_runtime_defaults,
)
from rzbackup_main.util.utils import (
    DIE_STATUS,
    LOG_STDERR,
    LOG_STDOUT,
    LOG_TRACE,
)
from rzbackup_tests.abstract_testcase import (
    AbstractTestCase,
)


#############################################################################
def suite() -> unittest.TestSuite:
    set_logging_runtime_defaults()
    test_cases = [
        TestHelperFunctions,
        TestLogging,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestHelperFunctions(AbstractTestCase):

    def parse_args(self, *extra: str) -> argparse.Namespace:
        log_dir = os.path.join(self.make_tmpdir(), argparse_cli.LOG_DIR_DEFAULT)
        return argparse_cli.argument_parser().parse_args(["--log-dir", log_dir] + list(extra) + ["report"])

    def test_logdir_must_not_be_symlink(self) -> None:
        tmpdir = self.make_tmpdir()
        target = os.path.join(tmpdir, "target")
        os.mkdir(target)
        link_path = os.path.join(tmpdir, argparse_cli.LOG_DIR_DEFAULT + "-link")
        os.symlink(target, link_path)
        args = argparse_cli.argument_parser().parse_args(["--log-dir", link_path, "report"])
        with self.assertRaises(SystemExit) as cm:
            LogParams(args)
        self.assertEqual(DIE_STATUS, cm.exception.code)
        self.assertIn("--log-dir must not be a symlink", str(cm.exception))

    def test_get_logger_with_cleanup(self) -> None:

        def check(log: Logger, files: set[str]) -> None:
            files_todo = files.copy()
            for handler in log.handlers:
                if isinstance(handler, logging.FileHandler):
                    self.assertIn(handler.baseFilename, files_todo)
                    files_todo.remove(handler.baseFilename)
            self.assertEqual(0, len(files_todo))

        args = self.parse_args()
        log_params = LogParams(args)
        with patch("sys.stdout"):
            log = get_logger(log_params, args)
        self.addCleanup(reset_logger, log)
        files = {os.path.abspath(log_params.log_file)}
        check(log, files)
        log.info("%s", "hello")
        log.log(LOG_STDOUT, "%s", "rsync output")
        with open(log_params.log_file, "r", encoding="utf-8") as fd:
            content = fd.read()
        self.assertIn("[I] hello", content)
        self.assertIn("rsync output", content)

        log.addFilter(lambda record: True)  # dummy
        reset_logger(log)
        files.clear()
        check(log, files)
        self.assertEqual(0, len(log.filters))
        self.assertEqual(logging.NOTSET, log.level)

    def test_get_logger_returns_provided_logger(self) -> None:
        args = self.parse_args()
        provided = logging.getLogger("rzbackup_test_provided")
        self.assertIs(provided, get_logger(LogParams(args), args, provided))

    def test_log_levels(self) -> None:
        levels = [([], logging.INFO), (["-v"], logging.DEBUG), (["-v", "-v"], LOG_TRACE), (["-q"], logging.ERROR)]
        for flags, level in levels:
            args = self.parse_args(*flags)
            log = _get_default_logger(LogParams(args), args)
            self.addCleanup(reset_logger, log)
            self.assertEqual(level, log.level)
            self.assertFalse(log.propagate)

    def test_get_syslog_address(self) -> None:
        udp = socket.SOCK_DGRAM
        tcp = socket.SOCK_STREAM
        self.assertEqual((("localhost", 514), udp), _get_syslog_address("localhost:514", "UDP"))
        self.assertEqual((("localhost", 514), tcp), _get_syslog_address(" localhost : 514 ", "TCP"))
        self.assertEqual(("/dev/log", None), _get_syslog_address("/dev/log", "UDP"))


#############################################################################
class TestLogging(AbstractTestCase):

    def make_record(self, level: int, msg: str, *args: object) -> logging.LogRecord:
        return logging.LogRecord("test", level, __file__, 1, msg, args, None)

    def test_default_formatter(self) -> None:
        formatter = get_default_log_formatter()
        text = formatter.format(self.make_record(logging.WARNING, "%s is %s", "lock", "stale"))
        self.assertIn(LOG_LEVEL_PREFIXES[logging.WARNING] + " lock is stale", text)
        text = formatter.format(self.make_record(logging.ERROR, "boom"))
        self.assertIn("[E] ERROR: boom", text)

    def test_default_formatter_emits_command_output_verbatim(self) -> None:
        formatter = get_default_log_formatter(prefix="rzbackup ")
        record = self.make_record(LOG_STDOUT, "%s", "sending incremental file list")
        self.assertEqual("rzbackup sending incremental file list", formatter.format(record))
        self.assertEqual("rzbackup oops", formatter.format(self.make_record(LOG_STDERR, "%s", "oops")))

    def test_default_formatter_with_exception(self) -> None:
        formatter = get_default_log_formatter()
        try:
            raise ValueError("bad value")
        except ValueError:
            record = logging.LogRecord("test", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
        text = formatter.format(record)
        self.assertIn("[E] ERROR: failed", text)
        self.assertIn("ValueError: bad value", text)

    def test_simple_logger(self) -> None:
        log = get_simple_logger("rzbackup")
        self.addCleanup(reset_logger, log)
        self.assertEqual(logging.INFO, log.level)
        self.assertEqual(1, len(log.handlers))
        formatter = log.handlers[0].formatter
        assert formatter is not None
        text = formatter.format(self.make_record(logging.ERROR, "Log init: %s", "denied"))
        self.assertIn("[E] ERROR: [rzbackup] Log init: denied", text)

    def test_syslog_handler_is_added(self) -> None:
        log_dir = os.path.join(self.make_tmpdir(), argparse_cli.LOG_DIR_DEFAULT)
        args = argparse_cli.argument_parser().parse_args(
            ["--log-dir", log_dir, "--log-syslog-address", "127.0.0.1:514", "--log-syslog-level", "DEBUG", "report"]
        )
        with patch("logging.handlers.SysLogHandler") as syslog_cls:
            syslog_cls.return_value = logging.NullHandler(level=logging.DEBUG)
            log = _get_default_logger(LogParams(args), args)
            self.addCleanup(reset_logger, log)
        syslog_cls.assert_called_once_with(address=("127.0.0.1", 514), facility=1, socktype=socket.SOCK_DGRAM)
        self.assertEqual(3, len(log.handlers))
