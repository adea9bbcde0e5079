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
"""Guard record that allows at most one btrsync run per host.

The lock file holds the PID of the owning process and an exclusive ``flock``. The kernel releases the flock when the owner
exits, even on a hard kill, so a leftover file never blocks later runs; it is merely reported as stale and taken over.
"""

from __future__ import (
    annotations,
)
import contextlib
import fcntl
import os
import types
from logging import (
    Logger,
)
from pathlib import (
    Path,
)
from typing import (
    Final,
)

from btrsync_main.utils import (
    FILE_PERMISSIONS,
    PROG_NAME,
    die,
    pid_exists,
)

# constants:
STILL_RUNNING_MSG: Final[str] = f"Exiting as another {PROG_NAME} run is still active"


#############################################################################
class RunLock(contextlib.AbstractContextManager):
    """Scoped acquisition of the per-host lock file with guaranteed release; usage: ``with RunLock(path, log): ...``"""

    def __init__(self, lock_file: str, log: Logger) -> None:
        self.lock_file: Final[str] = lock_file
        self.log: Final[Logger] = log
        self._fd: int | None = None

    def open(self) -> RunLock:
        """Atomically creates or opens the lock file and acquires it; dies if another live process holds it."""
        while True:
            fd: int = os.open(self.lock_file, os.O_RDWR | os.O_CREAT | os.O_NOFOLLOW, FILE_PERMISSIONS)
            try:
                # Acquire an exclusive lock; will raise an error if lock is already held by another process.
                # The (advisory) lock is auto-released when the process terminates or the fd is closed.
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)  # LOCK_NB ... non-blocking
            except BlockingIOError:
                owner: int | None = _read_pid(fd)
                os.close(fd)
                die(f"{STILL_RUNNING_MSG} (pid {owner if owner is not None else 'unknown'}) per lock file: {self.lock_file}")
            if _is_linked_at(fd, self.lock_file):
                break
            # the holder unlinked the file between our open() and flock(), so lock its successor instead
            self.log.debug("Lock file was replaced while acquiring it; retrying: %s", self.lock_file)
            os.close(fd)
        previous_owner: int | None = _read_pid(fd)
        if previous_owner is not None and previous_owner != os.getpid() and not pid_exists(previous_owner):
            self.log.warning("Taking over stale lock file left behind by dead process %s: %s", previous_owner, self.lock_file)
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode("utf-8"))
        os.fsync(fd)
        self._fd = fd
        return self

    def close(self) -> None:
        """Removes the lock file and releases the lock; safe to call more than once."""
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            Path(self.lock_file).unlink(missing_ok=True)  # don't accumulate stale files
        finally:
            os.close(fd)

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> RunLock:
        return self.open()

    def __exit__(
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: types.TracebackType | None
    ) -> None:
        self.close()


def _read_pid(fd: int) -> int | None:
    """Returns the PID recorded in the lock file, or None if the file is empty or garbled."""
    os.lseek(fd, 0, os.SEEK_SET)
    text: str = os.read(fd, 64).decode("utf-8", errors="replace").strip()
    return int(text) if text.isdigit() else None


def _is_linked_at(fd: int, path: str) -> bool:
    """Returns True if the open file is still the one that ``path`` names, rather than an unlinked or replaced inode."""
    try:
        path_stat: os.stat_result = os.stat(path, follow_symlinks=False)
    except FileNotFoundError:
        return False
    fd_stat: os.stat_result = os.fstat(fd)
    return (fd_stat.st_dev, fd_stat.st_ino) == (path_stat.st_dev, path_stat.st_ino)
