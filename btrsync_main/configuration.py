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
"""Configuration subsystem; Centralizes the argparse-derived option values for logging, ssh connectivity, replication and
retention into plain objects that are passed around instead of the raw ``argparse.Namespace``."""

from __future__ import (
    annotations,
)
import argparse
import os
import re
import tempfile
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    Final,
)

import btrsync_main.utils
from btrsync_main.argparse_cli import (
    LOG_DIR_DEFAULT,
)
from btrsync_main.detect import (
    DISABLE_PRG,
)
from btrsync_main.retry import (
    RetryPolicy,
)
from btrsync_main.utils import (
    DIR_PERMISSIONS,
    FILE_PERMISSIONS,
    PROG_NAME,
    SHELL_CHARS,
    die,
    get_home_directory,
    getenv_bool,
    getenv_int,
    validate_is_not_a_symlink,
)

# constants:
HOME_DIRECTORY: Final[str] = get_home_directory()


#############################################################################
class LogParams:
    """Option values for logging."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        if args.quiet:
            log_level: str = "ERROR"
        elif args.verbose >= 2 or args.debug:
            log_level = "TRACE"
        elif args.verbose >= 1:
            log_level = "DEBUG"
        else:
            log_level = "INFO"
        self.log_level: Final[str] = log_level
        self.timestamp: Final[str] = datetime.now().isoformat(sep="_", timespec="seconds")  # 2024-09-03_12:26:15
        self.quiet: Final[bool] = args.quiet
        self.home_dir: Final[str] = HOME_DIRECTORY
        self.log_dir: Final[str] = args.log_dir if args.log_dir else os.path.join(self.home_dir, LOG_DIR_DEFAULT)
        if LOG_DIR_DEFAULT not in os.path.basename(self.log_dir):
            die(f"Basename of --log-dir must contain the substring '{LOG_DIR_DEFAULT}', but got: {self.log_dir}")
        os.makedirs(self.log_dir, mode=DIR_PERMISSIONS, exist_ok=True)
        validate_is_not_a_symlink("--log-dir ", self.log_dir)
        fd, self.log_file = tempfile.mkstemp(suffix=".log", prefix=f"{PROG_NAME}_{self.timestamp}-", dir=self.log_dir)
        os.fchmod(fd, FILE_PERMISSIONS)
        os.close(fd)
        log_file_stem: str = os.path.basename(self.log_file)[0 : -len(".log")]
        # logging.getLogger() interprets chars such as '.' in special ways, thus sanitize the Python logger name:
        self.logger_name_suffix: Final[str] = re.sub(r"[^A-Za-z0-9_]", repl="_", string=log_file_stem)

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
class Params:
    """All parsed CLI options combined into a single bundle; simplifies passing around numerous settings and defaults."""

    def __init__(
        self,
        args: argparse.Namespace,
        sys_argv: list[str],
        log_params: LogParams,
        log: Logger,
        inject_params: dict[str, bool] | None = None,
    ) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        assert args is not None
        assert isinstance(sys_argv, list)
        assert log_params is not None
        assert log is not None
        self.args: Final[argparse.Namespace] = args
        self.sys_argv: Final[list[str]] = sys_argv
        self.log_params: Final[LogParams] = log_params
        self.log: Final[Logger] = log
        self.inject_params: Final[dict[str, bool]] = inject_params if inject_params is not None else {}  # for testing only

        assert len(args.src_locations) > 0
        self.src_locations: Final[list[str]] = args.src_locations
        self.dst_location: Final[str] = args.dst_location
        self.keep: Final[int | None] = args.keep
        self.delete_orphans: Final[bool] = args.delete
        self.clone: Final[bool] = args.clone
        self.sequential_seed: Final[bool] = args.sequential
        self.skip_non_incremental: Final[bool] = args.skip_non_incremental
        self.parent_depth: Final[int] = args.parent_depth
        self.max_depth: Final[int] = args.max_depth
        self.dry_run: Final[bool] = args.dryrun
        self.verbose_btrfs: Final[bool] = args.verbose >= 2 or args.debug
        self.retry_policy: Final[RetryPolicy] = RetryPolicy(args)
        self.enable_privilege_elevation: Final[bool] = not args.no_privilege_elevation
        self.is_test_mode: Final[bool] = getenv_bool("test_mode", False)  # for testing only

        self.btrfs_program: Final[str] = self._program_name("btrfs")
        self.ps_program: Final[str] = self._program_name(args.ps_program)
        self.pv_program: Final[str] = self._program_name(args.pv_program)
        self.pv_program_opts: Final[list[str]] = self.split_args(args.pv_program_opts)
        self.shell_program: Final[str] = self._program_name(args.shell_program)
        self.ssh_program: Final[str] = self._program_name(args.ssh_program)
        self.sudo_program: Final[str] = self._program_name(args.sudo_program)
        self.compression_program_opts: Final[list[str]] = self.split_args(args.compression_program_opts)
        default_lock_file: str = os.path.join(tempfile.gettempdir(), PROG_NAME + ".lock")
        self.lock_file: Final[str] = args.lock_file if args.lock_file else default_lock_file
        self.ssh_control_persist_secs: Final[int] = getenv_int("ssh_control_persist_secs", 90)

        self.src: Final[Remote] = Remote("src", args, self)  # src dataset, host and ssh options
        self.dst: Final[Remote] = Remote("dst", args, self)  # dst dataset, host and ssh options

        # mutable variables:
        self.compression_program: str = self._program_name(args.compression_program)  # resolved by detect.py
        self.available_programs: dict[str, dict[str, str]] = {}

    def split_args(self, text: str, *items: str) -> list[str]:
        """Splits option string on runs of one or more whitespace into an option list."""
        text = text.strip()
        opts: list[str] = text.split() if text else []
        xappend: list[str] = [item for item in items if item]
        self._validate_quoting(opts)
        return opts + xappend

    @staticmethod
    def _validate_quoting(opts: list[str]) -> None:
        """Quoting isn't supported, so fail fast rather than passing a half-quoted option to a program."""
        for opt in opts:
            if "'" in opt or '"' in opt or "`" in opt:
                die(f"Option must not contain a single quote or double quote or backtick character: {opt}")

    def _program_name(self, program: str) -> str:
        """For testing: helps simulate errors caused by external programs."""
        if not program:
            die(f"Program name must not be missing: {program}")
        for char in SHELL_CHARS + ":":
            if char in program:
                die(f"Program name must not contain a '{char}' character: {program}")
        if self.inject_params.get("inject_unavailable_" + program, False):
            return program + "-xxx"  # substitute a program that cannot be found on the PATH
        if self.inject_params.get("inject_failing_" + program, False):
            return "false"  # substitute a program that will error out with non-zero return code
        return program

    def dry(self, msg: str) -> str:
        """Prefix ``msg`` with 'Dry' when running in dry-run mode."""
        return btrsync_main.utils.dry(msg, self.dry_run)

    def is_program_available(self, program: str, location: str) -> bool:
        """Return True if ``program`` was detected on ``location`` host."""
        return program in self.available_programs.get(location, {})


#############################################################################
class Remote:
    """Connection settings for either source or destination host."""

    def __init__(self, loc: str, args: argparse.Namespace, p: Params) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        assert loc == "src" or loc == "dst"
        self.location: Final[str] = loc
        self.params: Final[Params] = p
        self.ssh_port: Final[int | None] = getattr(args, f"ssh_{loc}_port")
        self.ssh_config_file: Final[str | None] = args.ssh_config_file
        if self.ssh_config_file:
            if "btrsync_ssh_config" not in os.path.basename(self.ssh_config_file):
                die(f"Basename of --ssh-config-file must contain substring 'btrsync_ssh_config': {self.ssh_config_file}")
        # disable interactive password prompts and X11 forwarding and pseudo-terminal allocation:
        self.ssh_extra_opts: Final[list[str]] = ["-oBatchMode=yes", "-oServerAliveInterval=0", "-x", "-T"] + (
            ["-v"] if args.verbose >= 3 else []
        )
        self.reuse_ssh_connection: Final[bool] = getenv_bool("reuse_ssh_connection", True)
        self.ssh_socket_dir: Final[str] = os.path.join(HOME_DIRECTORY, ".ssh", PROG_NAME)

        # mutable variables:
        self.root_paths: list[str] = []  # deferred until run_main(); exactly one path for dst
        self.sudo: str = ""
        self.ssh_user: str = ""
        self.ssh_host: str = ""
        self.ssh_user_host: str = ""

    @property
    def root_path(self) -> str:
        """Returns the first (for dst: the only) root path of this location."""
        return self.root_paths[0]

    def local_ssh_command(self) -> list[str]:
        """Returns the ssh CLI command to run locally in order to talk to the remote host; This excludes the (trailing)
        command to run on the remote host, which will be appended later."""
        if not self.ssh_user_host:
            return []  # path is on local host - don't use ssh

        # path is on remote host
        p: Params = self.params
        if p.ssh_program == DISABLE_PRG:
            die("Cannot talk to remote host because ssh CLI is disabled.")
        ssh_cmd: list[str] = [p.ssh_program] + self.ssh_extra_opts
        if self.ssh_config_file:
            ssh_cmd += ["-F", self.ssh_config_file]
        if self.ssh_port:
            ssh_cmd += ["-p", str(self.ssh_port)]
        if self.reuse_ssh_connection:
            # Performance: reuse ssh connection for low latency startup of frequent ssh invocations via multiplexing.
            # See https://en.wikibooks.org/wiki/OpenSSH/Cookbook/Multiplexing
            os.makedirs(self.ssh_socket_dir, mode=DIR_PERMISSIONS, exist_ok=True)
            ssh_cmd += [
                "-oControlMaster=auto",
                f"-oControlPath={os.path.join(self.ssh_socket_dir, '%C')}",
                f"-oControlPersist={p.ssh_control_persist_secs}s",
            ]
        ssh_cmd += [self.ssh_user_host]
        return ssh_cmd

    def __repr__(self) -> str:
        return str({k: v for k, v in self.__dict__.items() if k != "params"})
