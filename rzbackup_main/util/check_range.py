# class CheckRange is adapted from https://gist.github.com/dmitriykovalev/2ab1aa33a8099ef2d514925d84aa89e7/30961300d3f8192f775709c06ff9a5b777475adf
# Written by Dmitriy Kovalev
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
"""Argparse action that validates numeric options against closed or half-open intervals.

Each endpoint can be either a number or positive or negative infinity:
[a, b] --> min=a, max=b
[a, b) --> min=a, sup=b
(a, b] --> inf=a, max=b
[a, +infinity) --> min=a
"""

from __future__ import (
    annotations,
)
import argparse
import operator
from typing import (
    Any,
    Callable,
    Final,
)

_BOUNDS: Final[dict[str, Callable[[Any, Any], bool]]] = {
    "inf": operator.gt,
    "min": operator.ge,
    "sup": operator.lt,
    "max": operator.le,
}


#############################################################################
class CheckRange(argparse.Action):
    """Rejects option values outside of the interval given via the ``min``, ``inf``, ``max`` or ``sup`` kwargs."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        if "min" in kwargs and "inf" in kwargs:
            raise ValueError("either min or inf, but not both")
        if "max" in kwargs and "sup" in kwargs:
            raise ValueError("either max or sup, but not both")
        self.bounds: dict[str, Any] = {name: kwargs.pop(name) for name in _BOUNDS if name in kwargs}
        for name, value in self.bounds.items():
            setattr(self, name, value)  # so that help strings may refer to %(min)s and friends
        super().__init__(*args, **kwargs)

    def interval(self) -> str:
        """Returns a human readable description of the valid interval."""
        bounds = self.bounds
        lo = f"[{bounds['min']}" if "min" in bounds else f"({bounds['inf']}" if "inf" in bounds else "(-infinity"
        up = f"{bounds['max']}]" if "max" in bounds else f"{bounds['sup']})" if "sup" in bounds else "+infinity)"
        return f"valid range: {lo}, {up}"

    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Any,
        option_string: str | None = None,
    ) -> None:
        for name, value in self.bounds.items():
            if not _BOUNDS[name](values, value):
                raise argparse.ArgumentError(self, self.interval())
        setattr(namespace, self.dest, values)
