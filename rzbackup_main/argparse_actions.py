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
"""Custom argparse actions that validate host names, pool names, file names and directory names at parse time."""

from __future__ import (
    annotations,
)
import argparse
from typing import (
    Any,
    final,
)

from rzbackup_main.util.utils import (
    SHELL_CHARS,
)


def _has_weird_whitespace(value: str) -> bool:
    return any(char.isspace() and char != " " for char in value)


#############################################################################
@final
class NonEmptyStringAction(argparse.Action):
    """Argparse action rejecting empty string values."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        """Strip whitespace and reject empty values."""
        values = values.strip()
        if values == "":
            parser.error(f"{option_string}: Empty string is not valid")
        setattr(namespace, self.dest, values)


#############################################################################
@final
class SafeFileNameAction(argparse.Action):
    """Ensures filenames lack path separators and weird whitespace."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        if ".." in values or "/" in values or "\\" in values:
            parser.error(f"{option_string}: Invalid file name '{values}': must not contain '..' or '/' or '\\'.")
        if _has_weird_whitespace(values):
            parser.error(f"{option_string}: Invalid file name '{values}': must not contain whitespace other than space.")
        setattr(namespace, self.dest, values)


#############################################################################
@final
class SafeDirectoryNameAction(argparse.Action):
    """Validates directory name argument, allowing only simple spaces."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        values = values.strip()
        if values == "":
            parser.error(f"{option_string}: Empty string is not valid")
        if _has_weird_whitespace(values):
            parser.error(f"{option_string}: Invalid dir name '{values}': must not contain whitespace other than space.")
        setattr(namespace, self.dest, values)


#############################################################################
@final
class SafeFilePathAction(argparse.Action):
    """Validates a file path argument; the path must name a file, not a directory."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        values = values.strip()
        if values == "":
            parser.error(f"{option_string}: Empty string is not valid")
        if values.endswith("/") or values.rsplit("/", 1)[-1] in (".", ".."):
            parser.error(f"{option_string}: Invalid file path '{values}': must not name a directory.")
        if _has_weird_whitespace(values):
            parser.error(f"{option_string}: Invalid file path '{values}': must not contain whitespace other than space.")
        setattr(namespace, self.dest, values)


#############################################################################
@final
class HostNameAction(argparse.Action):
    """Validates a backup host name; host names become ZFS dataset names, directory names and lock file names."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        name = option_string or self.dest
        if values is not None:
            values = values.strip()
            if not is_valid_host_name(values):
                parser.error(f"{name}: Invalid host name '{values}'")
        setattr(namespace, self.dest, values)


#############################################################################
@final
class PoolNameAction(argparse.Action):
    """Validates a ZFS pool name, i.e. a dataset name without any slash."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        values = values.strip()
        if (
            not values
            or "/" in values
            or "@" in values
            or not values[0].isalpha()
            or any(char in SHELL_CHARS or char.isspace() for char in values)
        ):
            parser.error(f"{option_string}: Invalid ZFS pool name '{values}'")
        setattr(namespace, self.dest, values)


def is_valid_host_name(host: str) -> bool:
    """Returns True if ``host`` is non-empty and free of path separators, whitespace and shell metacharacters."""
    return (
        bool(host)
        and host not in (".", "..")
        and not host.startswith("-")
        and not any(char in SHELL_CHARS or char.isspace() or char in "/:" for char in host)
    )
