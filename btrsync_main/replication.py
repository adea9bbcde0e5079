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
"""The core replication algorithm is in replicate_snapshot(), which decides per source snapshot whether to skip it or to
transfer it fully or incrementally, runs the 'btrfs send | btrfs receive' pipeline, retries on failure, and keeps the
destination index current so that later snapshots of the same run can use freshly received ones as seeds.

Snapshots are processed strictly sequentially in creation time order, because each transfer may depend on the destination
state produced by the previous one.
"""

from __future__ import (
    annotations,
)
import contextlib
import os
import re
import shlex
import subprocess
import sys
import tempfile
import time
from subprocess import (
    DEVNULL,
    PIPE,
    CalledProcessError,
)
from typing import (
    IO,
    TYPE_CHECKING,
    Final,
    NamedTuple,
)

from btrsync_main.catalog import (
    Snapshot,
    show_subvolumes,
)
from btrsync_main.connection import (
    run_ssh_command,
    try_ssh_command,
)
from btrsync_main.detect import (
    DISABLE_PRG,
)
from btrsync_main.identity import (
    DestinationIndex,
    exists_at_destination,
)
from btrsync_main.retry import (
    Retry,
    RetryableError,
    run_with_retries,
)
from btrsync_main.seed import (
    Seed,
    choose_seed,
)
from btrsync_main.utils import (
    LOG_DEBUG,
    LOG_TRACE,
    die,
    human_readable_duration,
    list_formatter,
    parent_components,
    stderr_to_str,
    terminate_process_subtree,
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
PIPEFAIL: Final[str] = "(set -o pipefail) 2>/dev/null && set -o pipefail; "  # not every sh supports pipefail
SKIPPED: Final[str] = "skipped"
DONE: Final[str] = "done"


#############################################################################
class PipelineLeg(NamedTuple):
    """One process of the transfer pipeline; ``location`` is the host the leg's shell pipeline runs on."""

    location: str  # src|local|dst
    argv: list[str]

    def __str__(self) -> str:
        return shlex.join(self.argv)


def replicate_snapshots(session: SyncSession, sources: list[Snapshot], index: DestinationIndex) -> bool:
    """Replicates all source snapshots in order; returns False if the run was aborted by a cancellation request."""
    log = session.params.log
    for i, snapshot in enumerate(sources):
        replicate_snapshot(session, snapshot, index)
        if session.abort_requested:
            remaining: int = len(sources) - i - 1
            log.warning("Aborting as requested after %s of %s snapshots; %s remain", i + 1, len(sources), remaining)
            return False
    return True


def replicate_snapshot(session: SyncSession, snapshot: Snapshot, index: DestinationIndex) -> str:
    """Skips or transfers a single source snapshot; returns SKIPPED or DONE. Raises the underlying error once retries are
    exhausted, which aborts the run since later snapshots may depend on this one as a seed."""
    p, log = session.params, session.params.log
    if exists_at_destination(snapshot, index):
        log.debug("Skipping snapshot that already exists at dst: %s", snapshot.path)
        if snapshot.path not in session.cloned_sources:
            session.cloned_sources.append(snapshot.path)
        session.num_snapshots_skipped += 1
        return SKIPPED

    seed: Seed | None = choose_seed(snapshot, index, session)
    if seed is None and p.skip_non_incremental:
        log.info("Skipping snapshot for which no seed exists, due to --skip-non-incremental: %s", snapshot.path)
        session.num_snapshots_skipped += 1
        return SKIPPED

    dst_dir: str = destination_dir(snapshot.path, index.root, p.parent_depth)
    dst_path: str = os.path.join(dst_dir, snapshot.name)
    log.log(LOG_TRACE, "Mapping src path %s to dst path %s", snapshot.path, dst_path)
    if seed is None:
        log.info(p.dry("Full send: %s --> %s"), snapshot.path, dst_path)
    else:
        log.info(p.dry("Incremental send (seed %s): %s --> %s"), seed.src_path, snapshot.path, dst_path)
    start_time_nanos: int = time.monotonic_ns()
    run_with_retries(log, p.retry_policy, _transfer, session, snapshot, seed, dst_path, index)
    elapsed: str = human_readable_duration(time.monotonic_ns() - start_time_nanos)
    log.debug(p.dry("Synchronized %s in %s"), snapshot.path, elapsed)

    index.add(snapshot.replica_identity, dst_path, snapshot.creation_time)
    session.cloned_sources.append(snapshot.path)
    session.next_seed_candidates.append(snapshot.path)
    session.num_snapshots_transferred += 1
    if seed is not None:
        session.num_incremental_transfers += 1
    return DONE


def destination_dir(src_path: str, dst_root: str, parent_depth: int) -> str:
    """Returns the dst directory to receive into, which mirrors the last ``parent_depth`` parent dirs of the src path."""
    return os.path.join(dst_root, *parent_components(src_path, parent_depth))


def _transfer(
    session: SyncSession, snapshot: Snapshot, seed: Seed | None, dst_path: str, index: DestinationIndex, retry: Retry
) -> None:
    """Runs one attempt of the send/receive pipeline; on failure deletes the partially received subvolume, if any."""
    p, log = session.params, session.params.log
    if retry.count > 0:
        log.debug("Retrying transfer of %s, attempt %s", snapshot.path, retry.count + 1)
    dst_dir: str = os.path.dirname(dst_path)
    if dst_dir != index.root:
        cmd: list[str] = p.split_args(f"{p.dst.sudo} mkdir -p", dst_dir)
        try_ssh_command(session, p.dst, LOG_DEBUG, is_dry=p.dry_run, cmd=cmd, exists=False)
    clone_sources: list[str] = session.cloned_sources if p.clone else []
    legs: list[PipelineLeg] = prepare_pipeline(
        session, send_cmd(p, snapshot, seed, clone_sources), receive_cmd(p, dst_dir)
    )
    msg: str = "Would execute: %s" if p.dry_run else "Executing: %s"
    log.log(LOG_TRACE if len(legs) > 1 else LOG_DEBUG, msg, list_formatter(legs, separator=" | "))
    if p.dry_run:
        return
    try:
        stdout: str = run_pipeline(session, legs)
    except (subprocess.CalledProcessError, UnicodeDecodeError) as e:
        if not isinstance(e, UnicodeDecodeError):
            log.warning("%s", stderr_to_str(e.stderr).rstrip())
        _delete_partially_received(session, dst_path, index)
        if session.terminate_requested:
            log.warning("Not retrying transfer of %s because it was terminated on request", snapshot.path)
            raise
        raise RetryableError("Subprocess failed") from e
    else:
        xprint(log, stdout, file=sys.stdout)


def send_cmd(p: Params, snapshot: Snapshot, seed: Seed | None, clone_sources: list[str]) -> list[str]:
    """Returns 'btrfs send [-p seed] [-c clone]... snapshot'; all paths are on the src host."""
    cmd: list[str] = p.split_args(f"{p.src.sudo} {p.btrfs_program} send")
    if not p.verbose_btrfs:
        cmd.append("-q")
    if seed is not None:
        cmd += ["-p", seed.src_path]
    for clone_source in clone_sources:
        if clone_source != snapshot.path and (seed is None or clone_source != seed.src_path):
            cmd += ["-c", clone_source]
    cmd.append(snapshot.path)
    return cmd


def receive_cmd(p: Params, dst_dir: str) -> list[str]:
    """Returns 'btrfs receive dst_dir'."""
    cmd: list[str] = p.split_args(f"{p.dst.sudo} {p.btrfs_program} receive")
    if p.verbose_btrfs:
        cmd.append("-v")
    cmd.append(dst_dir)
    return cmd


def prepare_pipeline(session: SyncSession, send: list[str], receive: list[str]) -> list[PipelineLeg]:
    """Constructs the legs of 'btrfs send | compress | pv | decompress | btrfs receive'.

    Compression runs within the src leg and decompression within the dst leg, so the data travels compressed through ssh;
    pv runs on the local host in between. Each remote leg is a single 'sh -c' command line for ssh.
    """
    p = session.params
    compression: str = p.compression_program
    src_pipe: str = shlex.join(send)
    dst_pipe: str = shlex.join(receive)
    if compression != DISABLE_PRG:
        src_pipe = f"{src_pipe} | {_compress_cmd(p)}"
        dst_pipe = f"{_decompress_cmd(p)} | {dst_pipe}"
    legs: list[PipelineLeg] = [PipelineLeg("src", _leg_argv(p, p.src, src_pipe, plain=send))]
    pv: list[str] = _pv_cmd(session)
    if pv:
        legs.append(PipelineLeg("local", pv))
    legs.append(PipelineLeg("dst", _leg_argv(p, p.dst, dst_pipe, plain=receive)))
    return legs


def _leg_argv(p: Params, remote: Remote, pipe: str, plain: list[str]) -> list[str]:
    """Wraps a shell pipeline into the argv that runs it on the given host, locally without a shell if possible."""
    if remote.ssh_user_host:
        return remote.local_ssh_command() + [f"{p.shell_program} -c {shlex.quote(PIPEFAIL + pipe)}"]
    if pipe == shlex.join(plain):
        return plain
    return [p.shell_program, "-c", PIPEFAIL + pipe]


def _compress_cmd(p: Params) -> str:
    return shlex.join([p.compression_program, "-c"] + p.compression_program_opts)


def _decompress_cmd(p: Params) -> str:
    return shlex.join([p.compression_program, "-dc"])


def _pv_cmd(session: SyncSession) -> list[str]:
    """If pv command is on the PATH, monitors the progress of data transfer from 'btrfs send' to 'btrfs receive'."""
    p = session.params
    if p.is_program_available("pv", "local") and not p.log_params.quiet and session.isatty:
        return [p.pv_program] + p.pv_program_opts
    return []


def run_pipeline(session: SyncSession, legs: list[PipelineLeg]) -> str:
    """Runs the legs connected via pipes and waits for all of them; returns stdout of the last leg.

    The exit status of every leg is checked, not just the last one; if any leg fails a CalledProcessError is raised for the
    first failing leg. Legs start in a new session so that a Ctrl-C on the terminal doesn't kill a transfer midway.
    """
    log = session.params.log
    procs: list[subprocess.Popen] = []
    with contextlib.ExitStack() as stack:
        stderr_files: list[IO[bytes] | None] = []
        stdout_file: IO[bytes] = stack.enter_context(tempfile.TemporaryFile())
        try:
            stdin: int | IO[bytes] | None = DEVNULL
            for i, leg in enumerate(legs):
                is_last: bool = i == len(legs) - 1
                is_local: bool = leg.location == "local"  # pv draws its progress bar on the terminal
                stderr_file: IO[bytes] | None = None if is_local else stack.enter_context(tempfile.TemporaryFile())
                stderr_files.append(stderr_file)
                proc = subprocess.Popen(
                    leg.argv, stdin=stdin, stdout=stdout_file if is_last else PIPE, stderr=stderr_file, start_new_session=True
                )
                if i > 0:
                    procs[-1].stdout.close()  # type: ignore[union-attr]  # allow previous leg to receive SIGPIPE
                procs.append(proc)
                stdin = proc.stdout
            for proc in procs:
                proc.wait()
        except BaseException:
            for proc in procs:
                if proc.poll() is None:
                    terminate_process_subtree(root_pid=proc.pid)
                    proc.kill()
                    proc.wait()
            raise

        failed: CalledProcessError | None = None
        for leg, proc, stderr_file in zip(legs, procs, stderr_files):
            stderr: str = ""
            if stderr_file is not None:
                stderr_file.seek(0)
                stderr = stderr_file.read().decode("utf-8", errors="replace")
            if proc.returncode != 0 and failed is None:
                failed = CalledProcessError(proc.returncode, leg.argv, stderr=stderr)
            elif stderr:
                log.log(LOG_DEBUG, "%s", f"{leg.location} leg stderr: {stderr.rstrip()}")
        if failed is not None:
            log.log(LOG_DEBUG, "%s", f"Pipeline leg failed with exit code {failed.returncode}: {shlex.join(failed.cmd)}")
            raise failed
        stdout_file.seek(0)
        return stdout_file.read().decode("utf-8", errors="replace")


def _delete_partially_received(session: SyncSession, dst_path: str, index: DestinationIndex) -> None:
    """Best-effort removal of a subvolume left behind by an interrupted 'btrfs receive'; never raises."""
    p, log = session.params, session.params.log
    if dst_path in index.paths:
        return  # the path existed before this transfer and isn't ours to delete
    try:
        if show_subvolumes(session, p.dst, [dst_path]).get(dst_path) is None:
            return
        log.warning(p.dry("Deleting partially received subvolume: %s"), dst_path)
        cmd: list[str] = p.split_args(f"{p.dst.sudo} {p.btrfs_program} subvolume delete", dst_path)
        try_ssh_command(session, p.dst, LOG_DEBUG, is_dry=p.dry_run, print_stdout=True, cmd=cmd, exists=False)
    except (subprocess.CalledProcessError, RetryableError) as e:
        log.warning("Cannot delete partially received subvolume %s: %s", dst_path, e)


BTRFS_RECEIVE_BUSY_REGEX: Final[re.Pattern[str]] = re.compile(
    r"(?:(?:[^ ]*?/)?(?:sudo|doas)(?: +-n)? +)?(?:[^ ]*?/)?btrfs (?:receive|recv)(?: .*)?"
)


def check_destination_not_busy(session: SyncSession, remote: Remote, dst_root: str) -> None:
    """Fails fast if another process is already running 'btrfs receive' into the destination directory tree. This is a
    proactive check only; it cannot rule out that another receive starts right afterwards."""
    p = session.params
    if not p.is_program_available("ps", remote.location):
        return
    cmd: list[str] = p.split_args(f"{p.ps_program} -Ao args")
    procs: list[str] = (run_ssh_command(session, remote, LOG_TRACE, cmd=cmd) or "").splitlines()
    if is_destination_busy(procs, dst_root):
        die(f"Cannot continue now: Destination is already busy with 'btrfs receive' from another process: {dst_root}")


def is_destination_busy(procs: list[str], dst_root: str) -> bool:
    """Returns True if any process list entry is a 'btrfs receive' into ``dst_root`` or a directory below it."""
    root: str = dst_root.rstrip("/") or "/"
    for proc in procs:
        proc = proc.strip()
        if not BTRFS_RECEIVE_BUSY_REGEX.fullmatch(proc):
            continue
        target: str = proc.rsplit(" ", 1)[-1].rstrip("/") or "/"
        if target == root or target.startswith(root + "/") or root == "/":
            return True
    return False
