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
"""
* Overview of the btrsync.py codebase:
* The codebase starts with docs, definition of input data and associated argument parsing into a "Params" class.
* All CLI option/parameter values are reachable from the "Params" class.
* Control flow starts in main(), which kicks off a "SyncSession".
* A SyncSession discovers the source snapshots (catalog.py), indexes the destination (identity.py), replicates each source
  snapshot in turn (replication.py, seed.py), and finally applies retention (retention.py).
"""

from __future__ import (
    annotations,
)
import argparse
import os
import re
import signal
import subprocess
import sys
import time
from logging import (
    Logger,
)
from typing import (
    Any,
)

import btrsync_main.loggers
from btrsync_main.argparse_cli import (
    argument_parser,
)
from btrsync_main.catalog import (
    Snapshot,
    discover,
)
from btrsync_main.configuration import (
    LogParams,
    Params,
    Remote,
)
from btrsync_main.detect import (
    DISABLE_PRG,
    detect_available_programs,
)
from btrsync_main.identity import (
    DestinationIndex,
    build_index,
)
from btrsync_main.loggers import (
    get_simple_logger,
    reset_logger,
)
from btrsync_main.replication import (
    check_destination_not_busy,
    replicate_snapshots,
)
from btrsync_main.retention import (
    apply_retention,
)
from btrsync_main.run_lock import (
    RunLock,
)
from btrsync_main.utils import (
    DIE_STATUS,
    LOG_TRACE,
    PROG_NAME,
    SHELL_CHARS,
    SynchronizedBool,
    die,
    getenv_bool,
    human_readable_duration,
    terminate_process_subtree,
    xfinally,
)


#############################################################################
def main() -> None:
    """API for command line clients."""
    run_main(argument_parser().parse_args(), sys.argv)


def run_main(args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
    """API for Python clients; visible for testing; may become a public API eventually."""
    SyncSession().run_main(args, sys_argv, log)


#############################################################################
class SyncSession:
    """Process-wide state of one btrsync run; created at start of the run and passed through every component call."""

    def __init__(self) -> None:
        self.params: Params
        self.abort_flag: SynchronizedBool = SynchronizedBool(False)  # set asynchronously by SIGINT/SIGTERM
        self.terminate_flag: SynchronizedBool = SynchronizedBool(False)  # set by the second SIGINT/SIGTERM
        self.cloned_sources: list[str] = []  # src paths known to exist at dst, usable as 'btrfs send -c' clone sources
        self.next_seed_candidates: list[str] = []  # src paths transferred during this run, most recent last
        self.sources: list[Snapshot] = []
        self.source_by_path: dict[str, Snapshot] = {}
        self.source_by_uuid: dict[str, Snapshot] = {}
        self._source_by_received_uuid: dict[str, Snapshot] | None = None  # built lazily, once per run
        self.num_snapshots_found: int = 0
        self.num_snapshots_transferred: int = 0
        self.num_incremental_transfers: int = 0
        self.num_snapshots_skipped: int = 0
        self.num_snapshots_deleted: int = 0
        self.isatty: bool = getenv_bool("isatty", sys.stdout.isatty())

        self.inject_params: dict[str, bool] = {}  # for testing only

    @property
    def abort_requested(self) -> bool:
        return self.abort_flag.value

    @property
    def terminate_requested(self) -> bool:
        """True once the in-flight transfer was killed on request; such a transfer must not be attempted again."""
        return self.terminate_flag.value

    def request_abort(self, old_handlers: dict[int, Any]) -> None:
        """On the first SIGINT/SIGTERM finishes the in-flight snapshot and then stops; on the second one also kills the
        transfer immediately."""
        if self.abort_flag.get_and_set(True):
            self.terminate_flag.value = True
            for signum, handler in old_handlers.items():
                signal.signal(signum, handler)  # restore original signal handler
            terminate_process_subtree(except_current_process=True)
        else:
            self.params.log.warning("Cancellation requested; stopping after the current snapshot. Repeat to stop now.")

    def set_sources(self, sources: list[Snapshot]) -> None:
        """Registers the discovered source snapshots and their lookup tables."""
        self.sources = sources
        self.source_by_path = {snapshot.path: snapshot for snapshot in sources}
        self.source_by_uuid = {snapshot.uuid: snapshot for snapshot in sources}
        self._source_by_received_uuid = None
        self.num_snapshots_found = len(sources)

    def source_by_received_uuid(self) -> dict[str, Snapshot]:
        """Maps the received UUID of each source snapshot to the snapshot; built on first use and cached for the run."""
        if self._source_by_received_uuid is None:
            self._source_by_received_uuid = {s.received_uuid: s for s in self.sources if s.received_uuid is not None}
        return self._source_by_received_uuid

    def run_main(self, args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
        """Sets up logging, takes the run lock, and runs one sync; maps errors to exit status codes."""
        with xfinally(lambda: reset_logger(log) if log is not None else None):
            try:
                log_params = LogParams(args)
                log = btrsync_main.loggers.get_logger(log_params, log=log, logger_name_suffix=log_params.logger_name_suffix)
                log.info("%s", f"Log file is: {log_params.log_file}")
            except BaseException as e:
                get_simple_logger(PROG_NAME).error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
                raise

            def log_error_on_exit(error: Any, status_code: Any, exc_info: bool = False) -> None:
                log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

            aborted: bool = False
            try:
                log.info("CLI arguments: %s %s", " ".join(sys_argv or []), f"[euid: {os.geteuid()}]")
                self.params = p = Params(args, sys_argv or [], log_params, log, self.inject_params)
                if p.is_test_mode:
                    log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                with RunLock(p.lock_file, log):
                    old_handlers: dict[int, Any] = {
                        signal.SIGINT: signal.getsignal(signal.SIGINT),
                        signal.SIGTERM: signal.getsignal(signal.SIGTERM),
                    }
                    for signum in old_handlers:
                        signal.signal(signum, lambda sig, frame: self.request_abort(old_handlers))
                    try:
                        aborted = not self.run_sync()
                    finally:
                        for signum, handler in old_handlers.items():
                            signal.signal(signum, handler)  # restore original signal handler
            except subprocess.CalledProcessError as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except SystemExit as e:
                log_error_on_exit(e, e.code)
                raise
            except (subprocess.TimeoutExpired, UnicodeDecodeError) as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except BaseException as e:
                log_error_on_exit(e, DIE_STATUS, exc_info=True)
                raise SystemExit(DIE_STATUS) from e
            finally:
                log.info("%s", f"Log file was: {log_params.log_file}")
            if aborted:
                log.info("Aborted as requested. Goodbye!")
            else:
                log.info("Success. Goodbye!")
            sys.stderr.flush()

    def run_sync(self) -> bool:
        """Runs discovery, replication and retention; returns False if the run stopped early due to a cancellation."""
        p, log = self.params, self.params.log
        start_time_nanos: int = time.monotonic_ns()
        self.validate()
        src, dst = p.src, p.dst
        check_destination_not_busy(self, dst, dst.root_path)

        sources: list[Snapshot] = discover(self, src, src.root_paths, max_depth=p.max_depth)
        if len(sources) == 0:
            die(f"No snapshots found in src: {' '.join(src.root_paths)}")
        self.set_sources(sources)
        log.info("Found %s src snapshots", len(sources))
        index: DestinationIndex = build_index(self, dst, dst.root_path, p.parent_depth)

        completed: bool = replicate_snapshots(self, sources, index)
        if completed:
            apply_retention(self, index, sources)
        else:
            log.warning("Skipping retention because the run was aborted")
        self.print_stats(start_time_nanos)
        return completed

    def print_stats(self, start_time_nanos: int) -> None:
        """Logs overall replication statistics after the run completes."""
        p, log = self.params, self.params.log
        elapsed_nanos: int = time.monotonic_ns() - start_time_nanos
        msg: str = p.dry(
            f"Replicated {self.num_snapshots_transferred} of {self.num_snapshots_found} snapshots "
            f"({self.num_incremental_transfers} incremental, {self.num_snapshots_skipped} skipped, "
            f"{self.num_snapshots_deleted} deleted) in {human_readable_duration(elapsed_nanos)}."
        )
        log.info("%s", msg)

    def validate(self) -> None:
        """Parses and validates the src and dst locations, then detects the programs available on each host."""
        p, log = self.params, self.params.log
        src_parts: list[tuple[str, str, str, str]] = [parse_location(loc, port=p.src.ssh_port) for loc in p.src_locations]
        if len({(user, host) for user, host, _, _ in src_parts}) > 1:
            die(f"All SRC locations must reside on the same host: {' '.join(p.src_locations)}")
        user, host, user_host, _ = src_parts[0]
        self._init_remote(p.src, user, host, user_host, [path for _, _, _, path in src_parts])
        user, host, user_host, path = parse_location(p.dst_location, port=p.dst.ssh_port)
        self._init_remote(p.dst, user, host, user_host, [path])

        if p.src.ssh_host == p.dst.ssh_host:
            for src_path in p.src.root_paths:
                if os.path.normpath(src_path) == os.path.normpath(p.dst.root_path):
                    die(f"Source and destination must not be the same! src: {src_path}, dst: {p.dst.root_path}")
        detect_available_programs(self)
        if p.is_test_mode:
            log.log(LOG_TRACE, "Validated Param values: src: %s, dst: %s", p.src, p.dst)

    def _init_remote(self, r: Remote, user: str, host: str, user_host: str, paths: list[str]) -> None:
        r.ssh_user, r.ssh_host, r.ssh_user_host, r.root_paths = user, host, user_host, paths
        r.sudo = self.sudo_cmd(r.ssh_user_host, r.ssh_user)

    def sudo_cmd(self, ssh_user_host: str, ssh_user: str) -> str:
        """Returns the sudo command prefix for btrfs operations; empty if running as root or elevation is disabled."""
        p = self.params
        is_root: bool = True
        if ssh_user_host != "":
            if ssh_user == "":
                if os.geteuid() != 0:
                    is_root = False
            elif ssh_user != "root":
                is_root = False
        elif os.geteuid() != 0:
            is_root = False

        if is_root or not p.enable_privilege_elevation:
            return ""
        if p.sudo_program == DISABLE_PRG:
            die(f"sudo CLI is not available on host: {ssh_user_host or 'localhost'}")
        # The '-n' option makes 'sudo' safer and more fail-fast. It avoids having sudo prompt the user for input of any
        # kind. If a password is required for the sudo command to run, sudo will display an error message and exit.
        return p.sudo_program + " -n"


#############################################################################
def parse_location(input_text: str, validate: bool = True, port: int | None = None) -> tuple[str, str, str, str]:
    """Splits [[user@]host:]path into user, host, user@host and path."""

    def convert_ipv6(hostname: str) -> str:  # support IPv6 without getting confused by host:path colon separator ...
        return hostname.replace("|", ":")  # ... and any colons that may be part of a (valid) path

    user, host, user_host, path = "", "", "", ""
    # Input format is [[user@]host:]path
    #                          1234         5          6
    if match := re.fullmatch(r"(((([^@/]*)@)?([^:/]+)):)?(.*)", input_text, re.DOTALL):
        user = match.group(4) or ""
        host = convert_ipv6(match.group(5) or "")
        if host == "-":
            host = ""
        path = match.group(6) or ""
        if user and host:
            user_host = f"{user}@{host}"
        elif host:
            user_host = host

    if validate:
        validate_user_name(user, input_text)
        validate_host_name(host, input_text)
        if port is not None:
            validate_port(port, f"Invalid port number: '{port}' for: '{input_text}' - ")
        validate_path(path, input_text)
    return user, host, user_host, path


def validate_path(path: str, input_text: str) -> None:
    """Checks that the path is non-empty and free of characters that can't safely cross the ssh shell boundary."""
    if path == "" or any(char in "'\"`$\\" or (char.isspace() and char != " ") for char in path):
        die(f"Invalid path: '{path}' for: '{input_text}'")


def validate_user_name(user: str, input_text: str) -> None:
    """Checks that the username is safe for ssh or local usage."""
    invalid_chars: str = SHELL_CHARS + "/"
    if user and (".." in user or any(c.isspace() or c in invalid_chars for c in user)):
        die(f"Invalid user name: '{user}' for: '{input_text}'")


def validate_host_name(host: str, input_text: str) -> None:
    """Checks hostname for forbidden characters or patterns."""
    invalid_chars: str = SHELL_CHARS + "/"
    if host and (host.startswith("-") or ".." in host or any(c.isspace() or c in invalid_chars for c in host)):
        die(f"Invalid host name: '{host}' for: '{input_text}'")


def validate_port(port: str | int, message: str) -> None:
    """Checks that port specification is a valid integer."""
    if isinstance(port, int):
        port = str(port)
    if port and not port.isdigit():
        die(message + f"must be empty or a positive integer: '{port}'")


#############################################################################
if __name__ == "__main__":
    main()
