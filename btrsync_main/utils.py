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
"""Small helpers shared by the btrsync modules.

Constants such as the exit status and the custom log levels live here, next to the ``btrsync_``-prefixed environment
lookups, the child process helpers used for transfers and cancellation, and the path and name helpers that map source
snapshots to destination directories.
"""

from __future__ import (
    annotations,
)
import contextlib
import errno
import logging
import os
import pwd
import re
import signal
import stat
import subprocess
import sys
import threading
import types
from collections import (
    defaultdict,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    Any,
    Callable,
    Final,
    Iterable,
    NoReturn,
    TextIO,
)

# constants:
PROG_NAME: Final[str] = "btrsync"
ENV_VAR_PREFIX: Final[str] = PROG_NAME + "_"
DIE_STATUS: Final[int] = 1
LOG_STDERR: Final[int] = (logging.INFO + logging.WARNING) // 2  # between INFO and WARNING
LOG_STDOUT: Final[int] = (LOG_STDERR + logging.INFO) // 2  # between INFO and LOG_STDERR
LOG_DEBUG: Final[int] = logging.DEBUG
LOG_TRACE: Final[int] = logging.DEBUG // 2  # below DEBUG
FILE_PERMISSIONS: Final[int] = stat.S_IRUSR | stat.S_IWUSR  # rw-------
DIR_PERMISSIONS: Final[int] = stat.S_IRWXU  # rwx------
SHELL_CHARS: Final[str] = '"' + "'`~!@#$%^&*()+={}[]|;<>?,\\"
_DIGITS_REGEX: Final[re.Pattern[str]] = re.compile(r"(\d+)")
_DURATION_UNITS: Final[tuple[tuple[str, int], ...]] = (  # unit name, and how many of the next smaller unit it holds
    ("ns", 1),
    ("μs", 1000),
    ("ms", 1000),
    ("s", 1000),
    ("m", 60),
    ("h", 60),
    ("d", 24),
)


def _getenv(key: str, default: str) -> str:
    value: str | None = os.getenv(ENV_VAR_PREFIX + key)
    return default if value is None else value


def getenv_int(key: str, default: int) -> int:
    """Returns the int value of env var ``btrsync_<key>``, or ``default`` if unset."""
    return int(_getenv(key, str(default)))


def getenv_bool(key: str, default: bool = False) -> bool:
    """Returns True if env var ``btrsync_<key>`` is 'true' (any case), or ``default`` if unset."""
    return _getenv(key, str(default)).strip().lower() == "true"


def get_home_directory() -> str:
    """Home dir of the effective user, looked up in the passwd database rather than via $HOME."""
    return pwd.getpwuid(os.getuid()).pw_dir


def human_readable_duration(duration: float, unit: str = "ns") -> str:
    """Formats a duration given in ``unit`` using the largest unit that keeps the number >= 1; e.g. '1.5s' or '567ms'."""
    names: list[str] = [name for name, _ in _DURATION_UNITS]
    i: int = names.index(unit)
    value: float = abs(duration)
    if value != 0:
        while value < 1 and i > 0:
            value *= _DURATION_UNITS[i][1]
            i -= 1
        while i + 1 < len(_DURATION_UNITS) and value >= _DURATION_UNITS[i + 1][1]:
            i += 1
            value /= _DURATION_UNITS[i][1]
    digits: int = 2 if value < 10 else 1 if value < 100 else 0
    number: str = f"{value:.{digits}f}".rstrip("0").rstrip(".") if digits > 0 else str(round(value))
    sign: str = "-" if duration < 0 and number != "0" else ""
    return f"{sign}{number}{names[i]}"


def dry(msg: str, is_dry_run: bool) -> str:
    return "Dry " + msg if is_dry_run else msg


def version_sort_key(name: str) -> tuple[tuple[int, int | str], ...]:
    """Sort key that orders embedded digit runs numerically, e.g. 'snap-9' sorts before 'snap-10'."""
    return tuple((0, int(part)) if part.isdigit() else (1, part) for part in _DIGITS_REGEX.split(name) if part)


def basename(path: str) -> str:
    """Returns the last path component, ignoring trailing slashes."""
    return os.path.basename(path.rstrip("/")) or path


def parent_components(path: str, depth: int) -> list[str]:
    """Returns the last ``depth`` components of the parent directory of ``path``; e.g. ('/a/b/c/snap', 2) -> ['b', 'c']."""
    if depth <= 0:
        return []
    parts: list[str] = [part for part in os.path.dirname(path.rstrip("/")).split("/") if part]
    return parts[-depth:]


class _JoinedList:
    """Joins the items only when logging actually renders the message."""

    def __init__(self, items: Iterable[Any], separator: str, lstrip: bool) -> None:
        self.items = items
        self.separator = separator
        self.lstrip = lstrip

    def __str__(self) -> str:
        text: str = self.separator.join(str(item) for item in self.items)
        return text.lstrip() if self.lstrip else text


def list_formatter(items: Iterable[Any], separator: str = " ", lstrip: bool = False) -> Any:
    """Returns a lazily joined view of ``items`` for use as a logging argument, e.g. a long command line."""
    return _JoinedList(items, separator, lstrip)


def stderr_to_str(stderr: Any) -> str:
    """Returns captured process output as text; CalledProcessError.stderr may be bytes even in text mode."""
    return stderr.decode("utf-8", errors="replace") if isinstance(stderr, bytes) else str(stderr)


def xprint(log: logging.Logger, value: Any, run: bool = True, end: str = "\n", file: TextIO | None = None) -> None:
    """Re-emits output of a child process through ``log`` at the custom STDOUT or STDERR level."""
    if not run or not value:
        return
    text: str = str(value) if end else str(value).rstrip()
    log.log(LOG_STDOUT if file is sys.stdout else LOG_STDERR, "%s", text)


def die(msg: str) -> NoReturn:
    """Ends the run with exit status DIE_STATUS; ``msg`` becomes the exception text that run_main() logs."""
    ex = SystemExit(msg)
    ex.code = DIE_STATUS
    raise ex


def subprocess_run(*args: Any, **kwargs: Any) -> subprocess.CompletedProcess:
    """Same contract as subprocess.run(), except that on timeout the whole process subtree of the child is terminated,
    not just the child, so that e.g. the remote side of an ssh command does not linger."""
    input_value: Any = kwargs.pop("input", None)
    timeout: float | None = kwargs.pop("timeout", None)
    check: bool = kwargs.pop("check", False)
    if input_value is not None:
        if kwargs.get("stdin") is not None:
            raise ValueError("input and stdin are mutually exclusive")
        kwargs["stdin"] = PIPE
    with subprocess.Popen(*args, **kwargs) as proc:
        try:
            stdout, stderr = proc.communicate(input_value, timeout=timeout)
        except subprocess.TimeoutExpired:
            terminate_process_subtree(root_pid=proc.pid)
            proc.kill()
            raise
        except BaseException:
            proc.kill()
            raise
    returncode: int = proc.returncode
    if check and returncode != 0:
        raise subprocess.CalledProcessError(returncode, proc.args, output=stdout, stderr=stderr)
    return subprocess.CompletedProcess(proc.args, returncode, stdout, stderr)


def terminate_process_subtree(except_current_process: bool = False, root_pid: int | None = None) -> None:
    """Sends SIGTERM to ``root_pid`` (default: this process) and to all of its descendants."""
    current_pid: int = os.getpid()
    root_pid = current_pid if root_pid is None else root_pid
    pids: list[int] = _descendants(root_pid)
    if root_pid != current_pid:
        pids.insert(0, root_pid)
    elif not except_current_process:
        pids.append(current_pid)  # last, so that all descendants get the signal
    for pid in pids:
        with contextlib.suppress(OSError):  # already gone
            os.kill(pid, signal.SIGTERM)


def _descendants(root_pid: int) -> list[int]:
    """Returns the PIDs of all transitive children of ``root_pid``, parents before children, as listed by ps."""
    children: defaultdict[int, list[int]] = defaultdict(list)
    cmd: list[str] = ["ps", "-Ao", "pid=,ppid="]
    for line in subprocess.run(cmd, stdin=DEVNULL, stdout=PIPE, text=True, check=True).stdout.splitlines():
        pid, ppid = line.split()
        children[int(ppid)].append(int(pid))
    result: list[int] = []
    todo: list[int] = [root_pid]
    while todo:
        for child in children[todo.pop()]:
            if child not in result:
                result.append(child)
                todo.append(child)
    return result


def pid_exists(pid: int) -> bool | None:
    """Returns True if a process with PID exists, False if not, or None if that cannot be determined."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # signal 0 only checks for existence
    except OSError as err:
        if err.errno == errno.ESRCH:
            return False
        return True if err.errno == errno.EPERM else None  # EPERM: exists but belongs to another user
    return True


def validate_is_not_a_symlink(msg: str, path: str) -> None:
    if os.path.islink(path):
        die(f"{msg}must not be a symlink: {path}")


#############################################################################
class SynchronizedBool:
    """A bool guarded by a lock; the cancellation flags that the signal handlers set are of this type."""

    def __init__(self, val: bool) -> None:
        self._lock: threading.Lock = threading.Lock()
        self._value: bool = val

    @property
    def value(self) -> bool:
        with self._lock:
            return self._value

    @value.setter
    def value(self, new_value: bool) -> None:
        with self._lock:
            self._value = new_value

    def get_and_set(self, new_value: bool) -> bool:
        """Stores ``new_value`` and returns the value it replaced, in one atomic step."""
        with self._lock:
            old_value, self._value = self._value, new_value
            return old_value

    def __bool__(self) -> bool:
        return self.value


#############################################################################
class _XFinally(contextlib.AbstractContextManager):

    def __init__(self, cleanup: Callable[[], None]) -> None:
        self._cleanup = cleanup

    def __exit__(  # type: ignore[exit-return]
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: types.TracebackType | None
    ) -> bool:
        try:
            self._cleanup()
        except BaseException as cleanup_exc:
            if exc is None:
                raise
            exc.__context__ = cleanup_exc  # shown in the traceback of exc, but exc is what propagates
        return False


def xfinally(cleanup: Callable[[], None]) -> _XFinally:
    """Like try/finally, except that an error raised by ``cleanup`` never replaces an error raised by the with-block.

    Usage: ``with xfinally(lambda: reset_logger(log)): ...``
    """
    return _XFinally(cleanup)
