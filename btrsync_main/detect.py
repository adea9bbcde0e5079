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
"""Detection of the programs available on the local, source and destination hosts, plus resolution of the compression
program to use on the wire."""

from __future__ import (
    annotations,
)
import subprocess
import sys
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from btrsync_main.connection import (
    run_ssh_command,
)
from btrsync_main.utils import (
    LOG_TRACE,
    die,
    list_formatter,
    stderr_to_str,
    subprocess_run,
    xprint,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from btrsync_main.btrsync import (
        SyncSession,
    )
    from btrsync_main.configuration import (
        Params,
        Remote,
    )

# constants:
DISABLE_PRG: Final[str] = "-"
COMPRESSION_PROGRAMS: Final[tuple[str, ...]] = ("xz", "bzip2", "pbzip2", "gzip", "pigz", "zstd", "pzstd")
COMPRESSION_FALLBACKS: Final[dict[str, str]] = {"pbzip2": "bzip2", "pigz": "gzip", "pzstd": "zstd"}  # multi -> single


def detect_available_programs(session: SyncSession) -> None:
    """Detects programs on local, src and dst hosts, fails fast if btrfs is missing, then resolves the compression program."""
    p = session.params
    log = p.log
    available_programs: dict[str, dict[str, str]] = p.available_programs
    if "local" not in available_programs:
        cmd: list[str] = [p.shell_program, "-c", _find_available_programs(p)]
        proc = subprocess_run(cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True)
        xprint(log=log, value=stderr_to_str(proc.stderr), file=sys.stderr, end="")
        available_programs["local"] = dict.fromkeys(proc.stdout.splitlines(), "")

    for r in [p.src, p.dst]:
        available_programs[r.location] = _detect_available_programs_remote(session, r)

    locations = ["src", "dst", "local"]
    if p.pv_program == DISABLE_PRG:
        _disable_program(p, "pv", locations)
    if p.ps_program == DISABLE_PRG:
        _disable_program(p, "ps", locations)
    if p.sudo_program == DISABLE_PRG:
        _disable_program(p, "sudo", locations)

    for key, programs in available_programs.items():
        log.debug(f"available_programs[{key}]: %s", list_formatter(programs, separator=", "))

    for r in [p.src, p.dst]:
        if not p.is_program_available("btrfs", r.location):
            die(f"{p.btrfs_program} CLI is not available on {r.location} host: {r.ssh_user_host or 'localhost'}")
        if r.sudo and not p.is_program_available("sudo", r.location):
            die(f"{p.sudo_program} CLI is not available on {r.location} host: {r.ssh_user_host or 'localhost'}")

    p.compression_program = resolve_compression_program(p)


def resolve_compression_program(p: Params) -> str:
    """Returns the compression program to use on the wire, falling back from a multi-threaded program to its single-threaded
    counterpart if the former is unavailable on src or dst host, and to no compression if neither is available."""
    requested: str = p.compression_program
    if requested == DISABLE_PRG:
        return DISABLE_PRG
    if not p.src.ssh_user_host and not p.dst.ssh_user_host:
        p.log.debug("%s", f"Not using compression program '{requested}' because data is transferred locally.")
        return DISABLE_PRG
    for program in (requested, COMPRESSION_FALLBACKS.get(requested)):
        if program and p.is_program_available(program, "src") and p.is_program_available(program, "dst"):
            if program != requested:
                p.log.warning("%s", f"'{requested}' is unavailable on src or dst host; falling back to '{program}'.")
            return program
    p.log.warning("%s", f"Compression program '{requested}' is unavailable on src or dst host; disabling compression.")
    return DISABLE_PRG


def _disable_program(p: Params, program: str, locations: list[str]) -> None:
    """Removes the given program from the available_programs mapping."""
    for location in locations:
        p.available_programs.get(location, {}).pop(program, None)


def _find_available_programs(p: Params) -> str:
    """POSIX shell script that checks for the existence of various programs; It uses `if` statements instead of `&&` plus
    `printf` instead of `echo` to ensure maximum compatibility across shells."""
    cmds: list[str] = []
    programs: dict[str, str] = {
        "btrfs": p.btrfs_program,
        "ps": p.ps_program,
        "pv": p.pv_program,
        "sh": p.shell_program,
        "ssh": p.ssh_program,
        "sudo": p.sudo_program,
    }
    programs.update({program: program for program in COMPRESSION_PROGRAMS})
    for name, program in programs.items():
        if program != DISABLE_PRG:
            cmds.append(f"if command -v {program} > /dev/null; then printf '{name}\\n'; fi")
    return "; ".join(cmds)


def _detect_available_programs_remote(session: SyncSession, remote: Remote) -> dict[str, str]:
    """Detects CLI tools available on ``remote``; a host without a usable shell is treated as having none."""
    p, log = session.params, session.params.log
    cmd: list[str] = [p.shell_program, "-c", _find_available_programs(p)]
    try:
        stdout: str = run_ssh_command(session, remote, LOG_TRACE, cmd=cmd)
    except (FileNotFoundError, PermissionError) as e:  # location is local and shell program file was not found
        if e.filename != p.shell_program:
            raise
    except subprocess.CalledProcessError as e:
        if remote.ssh_user_host and e.returncode == 255:
            die(f"Cannot connect to {remote.location} host: {remote.ssh_user_host}: {stderr_to_str(e.stderr).strip()}")
    else:
        return dict.fromkeys(stdout.splitlines(), "")
    log.warning("%s", f"Failed to find {p.shell_program} on {remote.location}. Continuing with minimal assumptions...")
    return {}
