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
"""Test case base class used by most unit tests.

Provides shared setup for consistent CLI argument parsing and for building Params against a private defaults file, so that
tests never read the system wide defaults or touch system wide lock files.
"""

from __future__ import (
    annotations,
)
import argparse
import logging
import os
import shutil
import tempfile
import unittest
from unittest.mock import (
    MagicMock,
)

from rzbackup_main import (
    argparse_cli,
    configuration,
)
from rzbackup_main.util import (
    utils,
)


#############################################################################
class AbstractTestCase(unittest.TestCase):

    def __init__(self, methodName: str = "runTest") -> None:  # noqa: N803
        super().__init__(methodName)
        # immutable variables:
        self.test_mode: str = utils.getenv_any("test_mode", "") or ""  # Consider toggling this when testing
        self.is_unit_test: bool = self.test_mode == "unit"  # run only unit tests aka skip integration tests

    def make_tmpdir(self) -> str:
        """Returns a fresh temp directory that is removed after the test."""
        tmpdir = tempfile.mkdtemp(prefix="rzbackup_test_")
        self.addCleanup(shutil.rmtree, tmpdir, ignore_errors=True)
        return tmpdir

    def write_defaults_file(self, tmpdir: str, **settings: str) -> str:
        """Writes a defaults file whose lock files live in ``tmpdir`` and returns its path."""
        settings = {"BACKUP_LOCKFILE": os.path.join(tmpdir, "rzbackup"), **settings}
        path = os.path.join(tmpdir, "defaults")
        with open(path, "w", encoding="utf-8") as fd:
            for key, value in settings.items():
                fd.write(f"{key}='{value}'\n")
        return path

    @staticmethod
    def argparser_parse_args(args: list[str]) -> argparse.Namespace:
        return argparse_cli.argument_parser().parse_args(
            args + ["--log-dir", os.path.join(utils.get_home_directory(), argparse_cli.LOG_DIR_DEFAULT + "-test")]
        )

    @staticmethod
    def make_params(
        args: argparse.Namespace,
        log_params: configuration.LogParams | None = None,
        log: logging.Logger | None = None,
    ) -> configuration.Params:
        log_params = log_params if log_params is not None else MagicMock(spec=configuration.LogParams)
        log = log if log is not None else MagicMock(spec=logging.Logger)
        return configuration.Params(args=args, sys_argv=[], log_params=log_params, log=log)

    def params_for(self, tmpdir: str, cli: list[str], **settings: str) -> configuration.Params:
        """Parses ``cli`` with a private defaults file in ``tmpdir`` and returns the resulting Params."""
        defaults_file = self.write_defaults_file(tmpdir, **settings)
        return self.make_params(self.argparser_parse_args(["--defaults-file", defaults_file] + cli))
