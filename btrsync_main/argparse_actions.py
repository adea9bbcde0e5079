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
"""Custom argparse actions used by the 'btrsync' CLI; these validate locations, numeric ranges and file names early, so that
the remaining code can rely on well-formed inputs."""

from __future__ import (
    annotations,
)
import argparse
import operator
from typing import (
    Any,
    Callable,
    final,
)

from btrsync_main.utils import (
    SHELL_CHARS,
)


#############################################################################
class CheckRange(argparse.Action):
    """Validates that a numeric option lies within a closed interval; either endpoint may be omitted for infinity."""

    ops: dict[str, Callable[[Any, Any], bool]] = {"min": operator.ge, "max": operator.le}  # noqa: RUF012

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.bounds: dict[str, Any] = {name: kwargs.pop(name) for name in self.ops if name in kwargs}
        super().__init__(*args, **kwargs)

    def interval(self) -> str:
        lo = f"[{self.bounds['min']}" if "min" in self.bounds else "(-infinity"
        up = f"{self.bounds['max']}]" if "max" in self.bounds else "+infinity)"
        return f"valid range: {lo}, {up}"

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        for name, bound in self.bounds.items():
            if not self.ops[name](values, bound):
                raise argparse.ArgumentError(self, self.interval())
        setattr(namespace, self.dest, values)


#############################################################################
@final
class LocationsAction(argparse.Action):
    """Splits the positional arguments into one or more source locations followed by exactly one destination location."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        """Rejects blank locations and requires at least one source plus the destination."""
        locations: list[str] = [value.strip() for value in values]
        if len(locations) < 2:
            parser.error("Must specify at least one SRC location and exactly one DST location")
        for location in locations:
            if location == "" or location.endswith(":"):
                parser.error(f"Location must not be empty: '{location}'")
        namespace.src_locations = locations[0:-1]
        namespace.dst_location = locations[-1]
        setattr(namespace, self.dest, locations)


#############################################################################
@final
class NonEmptyStringAction(argparse.Action):
    """Argparse action rejecting empty string values."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        values = values.strip()
        if values == "":
            parser.error(f"{option_string}: Empty string is not valid")
        setattr(namespace, self.dest, values)


#############################################################################
@final
class SSHConfigFileNameAction(argparse.Action):
    """Validates SSH config file argument contains no whitespace or shell chars."""

    def __call__(
        self, parser: argparse.ArgumentParser, namespace: argparse.Namespace, values: Any, option_string: str | None = None
    ) -> None:
        values = values.strip()
        if values == "":
            parser.error(f"{option_string}: Empty string is not valid")
        if any(char in SHELL_CHARS or char.isspace() for char in values):
            parser.error(f"{option_string}: Invalid file name '{values}': must not contain whitespace or special chars.")
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
        if any(char.isspace() and char != " " for char in values):
            parser.error(f"{option_string}: Invalid dir name '{values}': must not contain whitespace other than space.")
        setattr(namespace, self.dest, values)
