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
"""Structured error type raised by backup, reap and report operations; carries a machine readable code plus the target it
relates to, so that the orchestrator can log, summarize and map failures to exit statuses."""

from __future__ import (
    annotations,
)
from typing import (
    Final,
)

# error codes:
ALREADY_RUNNING: Final[str] = "already_running"
ROTATION_CONFLICT: Final[str] = "rotation_conflict"
UNREACHABLE_SOURCE: Final[str] = "unreachable_source"
TRANSFER_FAILED: Final[str] = "transfer_failed"
DATASET_CREATE_FAILED: Final[str] = "dataset_create_failed"
INVALID_TARGET: Final[str] = "invalid_target"
ERROR_CODES: Final[frozenset[str]] = frozenset(
    [ALREADY_RUNNING, ROTATION_CONFLICT, UNREACHABLE_SOURCE, TRANSFER_FAILED, DATASET_CREATE_FAILED, INVALID_TARGET]
)


#############################################################################
class BackupError(Exception):
    """Indicates that an operation on a single target failed in a controlled way; other targets may still proceed."""

    def __init__(self, code: str, message: str, target: str = "") -> None:
        assert code in ERROR_CODES, code
        super().__init__(message)
        self.code: Final[str] = code
        self.message: Final[str] = message
        self.target: Final[str] = target  # host name, or empty if not target specific

    def __str__(self) -> str:
        prefix = f"{self.target}: " if self.target else ""
        return f"[{self.code}] {prefix}{self.message}"
