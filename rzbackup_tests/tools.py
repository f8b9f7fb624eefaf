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
"""Various small tools for use in tests; Everything in this module relies only on the Python standard library so other
modules remain dependency free."""

from __future__ import (
    annotations,
)
import contextlib
import inspect
import io
import os
import types
import unittest
from collections.abc import (
    Iterator,
)
from typing import (
    Callable,
)


@contextlib.contextmanager
def capture_stdout() -> Iterator[io.StringIO]:
    """Capture stdout output for later inspection within a test."""
    buf = io.StringIO()
    with contextlib.redirect_stdout(buf):
        yield buf


def write_file(path: str, content: str = "", mtime: float | None = None) -> str:
    """Creates ``path`` including parent directories with the given content and optional modification time."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fd:
        fd.write(content)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def read_file(path: str) -> str:
    with open(path, "r", encoding="utf-8") as fd:
        return fd.read()


def suite_class_names(suite: unittest.TestSuite) -> set[str]:
    """Returns the names of the TestCase classes contained in ``suite``, descending into nested suites."""
    names: set[str] = set()
    for item in suite:
        if isinstance(item, unittest.TestSuite):
            names |= suite_class_names(item)
        else:
            names.add(type(item).__name__)
    return names


#############################################################################
class TestSuiteCompleteness(unittest.TestCase):
    """Fails if a test module defines test classes that its suite() forgets to run."""

    def __init__(
        self,
        method_name: str = "runTest",
        modules: list[types.ModuleType] | None = None,
        class_predicate: Callable[[type[unittest.TestCase]], bool] | None = None,
    ) -> None:
        super().__init__(method_name)
        self.modules = modules or []
        self.class_predicate = class_predicate or (lambda _cls: False)

    def defined_test_classes(self, module: types.ModuleType) -> set[str]:
        return {
            name
            for name, cls in inspect.getmembers(module, inspect.isclass)
            if issubclass(cls, unittest.TestCase) and cls.__module__ == module.__name__ and self.class_predicate(cls)
        }

    def test_all_modules_have_a_complete_suite(self) -> None:
        orphans = {
            module.__name__: sorted(self.defined_test_classes(module) - suite_class_names(module.suite()))
            for module in self.modules
        }
        orphans = {name: classes for name, classes in orphans.items() if classes}
        self.assertEqual({}, orphans, "test classes missing from their module's suite()")
