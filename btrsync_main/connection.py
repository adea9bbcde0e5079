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
"""Remote execution of btrfs and shell commands; runs a command on the local host, or over ssh on the source or
destination host, and returns its stdout.

Remote ssh connections are multiplexed via the ssh ControlMaster options configured in ``Remote.local_ssh_command()``, so
that the many short metadata queries issued during discovery reuse a single TCP connection.
"""

from __future__ import (
    annotations,
)
import logging
import shlex
import subprocess
import sys
from subprocess import (
    DEVNULL,
    PIPE,
    CalledProcessError,
    CompletedProcess,
)
from typing import (
    TYPE_CHECKING,
    Final,
)

from btrsync_main.retry import (
    RetryableError,
)
from btrsync_main.utils import (
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
        Remote,
    )

# constants:
NOT_FOUND_MARKERS: Final[tuple[str, ...]] = (
    "No such file or directory",
    "not a subvolume",
    "Not a Btrfs subvolume",
    "cannot find real path",
)


def run_ssh_command(
    session: SyncSession,
    remote: Remote,
    level: int = -1,
    is_dry: bool = False,
    check: bool = True,
    print_stdout: bool = False,
    print_stderr: bool = True,
    cmd: list[str] | None = None,
) -> str:
    """Runs the given CLI cmd via ssh on the given remote, and returns stdout.

    The full command is the concatenation of both the command to run on the localhost in order to talk to the remote host
    ($remote.local_ssh_command()) and the command to run on the given remote host ($cmd).

    Note: When executing on a remote host (remote.ssh_user_host is set), cmd arguments are pre-quoted with shlex.quote to
    safely traverse the ssh "remote shell" boundary, as ssh concatenates argv into a single remote shell string. In local
    mode (no remote.ssh_user_host) argv is executed directly without an intermediate shell.
    """
    level = level if level >= 0 else logging.INFO
    assert cmd is not None and isinstance(cmd, list) and len(cmd) > 0
    log = session.params.log
    quoted_cmd: list[str] = [shlex.quote(arg) for arg in cmd]
    ssh_cmd: list[str] = remote.local_ssh_command()
    if remote.ssh_user_host:
        cmd = quoted_cmd
    msg: str = "Would execute: %s" if is_dry else "Executing: %s"
    log.log(level, msg, list_formatter([shlex.quote(arg) for arg in ssh_cmd] + quoted_cmd, lstrip=True))
    if is_dry:
        return ""
    try:
        process: CompletedProcess[str] = subprocess_run(
            ssh_cmd + cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True, check=check
        )
    except (subprocess.CalledProcessError, UnicodeDecodeError) as e:
        if not isinstance(e, UnicodeDecodeError):
            xprint(log, stderr_to_str(e.stdout), run=print_stdout, file=sys.stdout, end="")
            xprint(log, stderr_to_str(e.stderr), run=print_stderr, file=sys.stderr, end="")
        raise
    else:
        xprint(log, process.stdout, run=print_stdout, file=sys.stdout, end="")
        xprint(log, process.stderr, run=print_stderr, file=sys.stderr, end="")
        return process.stdout


def try_ssh_command(
    session: SyncSession,
    remote: Remote,
    level: int,
    is_dry: bool = False,
    print_stdout: bool = False,
    cmd: list[str] | None = None,
    exists: bool = True,
) -> str | None:
    """Convenience method that helps retry/react to a path or subvolume that potentially doesn't exist (anymore).

    Returns None if ``exists`` is True and the command failed because its target does not exist; otherwise wraps the
    failure into a ``RetryableError``.
    """
    assert cmd is not None and isinstance(cmd, list) and len(cmd) > 0
    log = session.params.log
    try:
        return run_ssh_command(session, remote, level=level, is_dry=is_dry, print_stdout=print_stdout, cmd=cmd)
    except (CalledProcessError, UnicodeDecodeError) as e:
        if not isinstance(e, UnicodeDecodeError):
            stderr: str = stderr_to_str(e.stderr)
            if exists and any(marker in stderr for marker in NOT_FOUND_MARKERS):
                return None
            log.warning("%s", stderr.rstrip())
        raise RetryableError("Subprocess failed") from e
