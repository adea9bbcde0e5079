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

Provides shared setup for consistent CLI argument parsing, plus factories for Params, SyncSession and Snapshot objects that
run against a local source and destination without touching any btrfs filesystem.
"""

from __future__ import (
    annotations,
)
import argparse
import logging
import os
import subprocess
import unittest
from typing import (
    Any,
)
from unittest.mock import (
    MagicMock,
)

from btrsync_main import (
    argparse_cli,
    configuration,
    utils,
)
from btrsync_main.btrsync import (
    SyncSession,
)
from btrsync_main.catalog import (
    BLOCK_MARKER,
    Snapshot,
)


#############################################################################
class AbstractTestCase(unittest.TestCase):

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
        inject_params: dict[str, bool] | None = None,
    ) -> configuration.Params:
        log_params = log_params if log_params is not None else MagicMock(spec=configuration.LogParams)
        log = log if log is not None else MagicMock(spec=logging.Logger)
        return configuration.Params(args=args, sys_argv=[], log_params=log_params, log=log, inject_params=inject_params)

    def make_session(
        self,
        cli_args: list[str] | None = None,
        available_programs: tuple[str, ...] = ("btrfs", "ps", "sh"),
    ) -> SyncSession:
        """Returns a session whose src and dst both live on the local host, as if validate() had already run."""
        args = self.argparser_parse_args(cli_args if cli_args is not None else ["/src", "/dst"])
        session = SyncSession()
        session.params = p = self.make_params(args)
        session.isatty = False
        p.src.root_paths = list(args.src_locations)
        p.dst.root_paths = [args.dst_location]
        for location in ("local", "src", "dst"):
            p.available_programs[location] = dict.fromkeys(available_programs, "")
        return session


def make_snapshot(
    path: str,
    ctime: float | None,
    uuid: str | None = None,
    received_uuid: str | None = None,
    parent_uuid: str | None = None,
    readonly: bool = True,
) -> Snapshot:
    """Returns a Snapshot whose UUID defaults to a value derived from its base name."""
    uuid = uuid if uuid is not None else "uuid-" + utils.basename(path)
    return Snapshot(path, ctime, uuid, received_uuid=received_uuid, parent_uuid=parent_uuid, readonly=readonly)


def subvolume_show_output(
    path: str, uuid: str, ctime: str, parent_uuid: str = "-", received_uuid: str = "-", flags: str = "readonly"
) -> str:
    """Returns text in the format printed by 'btrfs subvolume show'."""
    return (
        f"{path.lstrip('/')}\n"
        f"\tName: \t\t\t{utils.basename(path)}\n"
        f"\tUUID: \t\t\t{uuid}\n"
        f"\tParent UUID: \t\t{parent_uuid}\n"
        f"\tReceived UUID: \t\t{received_uuid}\n"
        f"\tCreation time: \t\t{ctime}\n"
        f"\tSubvolume ID: \t\t257\n"
        f"\tGeneration: \t\t10\n"
        f"\tGen at creation: \t9\n"
        f"\tParent ID: \t\t5\n"
        f"\tTop level ID: \t\t5\n"
        f"\tFlags: \t\t\t{flags}\n"
        f"\tSnapshot(s):\n"
    )


#############################################################################
class FakeHost:
    """In-memory directory tree plus 'btrfs subvolume show' output of a single host; installed as side_effect of a patched
    run_ssh_command(), it answers the realpath, find and subvolume show commands issued by catalog.py."""

    def __init__(self) -> None:
        self.dirs: set[str] = {"/"}
        self.subvolumes: dict[str, str] = {}  # path -> output of 'btrfs subvolume show'
        self.cmds: list[list[str]] = []

    def add_dir(self, path: str) -> None:
        while path not in self.dirs:
            self.dirs.add(path)
            path = os.path.dirname(path)

    def add_subvolume(
        self, path: str, uuid: str, ctime: str, parent_uuid: str = "-", received_uuid: str = "-", flags: str = "readonly"
    ) -> None:
        self.add_dir(path)
        self.subvolumes[path] = subvolume_show_output(path, uuid, ctime, parent_uuid, received_uuid, flags)

    def remove(self, path: str) -> None:
        self.dirs = {d for d in self.dirs if d != path and not d.startswith(path + "/")}
        self.subvolumes.pop(path, None)

    def __call__(self, session: Any, remote: Any, level: int = -1, is_dry: bool = False, **kwargs: Any) -> str:
        cmd: list[str] = kwargs["cmd"]
        self.cmds.append(cmd)
        if is_dry:
            return ""
        if cmd[0] == "realpath":
            path = os.path.normpath(cmd[-1])
            if path not in self.dirs:
                raise subprocess.CalledProcessError(1, cmd, stderr=f"realpath: {path}: No such file or directory\n")
            return path + "\n"
        if cmd[0] == "find":
            root = cmd[1]
            min_depth = int(cmd[cmd.index("-mindepth") + 1])
            max_depth = int(cmd[cmd.index("-maxdepth") + 1])
            found = [d for d in self.dirs if d.startswith(root + "/") and min_depth <= d[len(root) :].count("/") <= max_depth]
            return "".join(d + "\n" for d in sorted(found, reverse=True))
        if len(cmd) > 2 and cmd[1] == "-c" and "subvolume show" in cmd[2]:
            return "".join(f"{BLOCK_MARKER}{path}\n{self.subvolumes.get(path, '')}" for path in cmd[4:])
        if cmd[1:3] == ["subvolume", "delete"]:
            self.remove(cmd[-1])
            return f"Delete subvolume (no-commit): '{cmd[-1]}'\n"
        if cmd[0:2] == ["mkdir", "-p"]:
            self.add_dir(cmd[-1])
            return ""
        raise AssertionError(f"Unexpected command: {cmd}")
