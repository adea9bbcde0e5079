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
"""Discovers read-only btrfs snapshots below source or destination paths and extracts their identity.

This module is the only place that parses the text output of ``btrfs subvolume show``; everything else works with the
immutable ``Snapshot`` records it returns. Many paths are queried with a single shell loop per host, which keeps the number of
ssh roundtrips independent of the number of snapshots.
"""

from __future__ import (
    annotations,
)
import re
import subprocess
from dataclasses import (
    dataclass,
)
from datetime import (
    datetime,
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
    basename,
    die,
    stderr_to_str,
    version_sort_key,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from btrsync_main.btrsync import (
        SyncSession,
    )
    from btrsync_main.configuration import (
        Remote,
    )

# constants:
ABSENT_UUIDS: Final[frozenset[str]] = frozenset(["", "-", "00000000-0000-0000-0000-000000000000"])
BLOCK_MARKER: Final[str] = "@@btrsync-subvolume@@ "
_FIELD_REGEX: Final[re.Pattern[str]] = re.compile(r"^\s+([A-Za-z][A-Za-z ()]*?):\s*(.*)$")
_CREATION_TIME_FORMATS: Final[tuple[str, ...]] = ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%d %H:%M:%S")


#############################################################################
@dataclass(frozen=True)
class Snapshot:
    """Identity and creation time of a btrfs subvolume; immutable once read."""

    path: str
    creation_time: float | None  # POSIX seconds, or None if unparsable
    uuid: str
    received_uuid: str | None = None  # set only if this subvolume was created by 'btrfs receive'
    parent_uuid: str | None = None
    readonly: bool = True

    @property
    def name(self) -> str:
        """Base name of the snapshot path."""
        return basename(self.path)

    @property
    def identity(self) -> tuple[str, str | None]:
        return self.uuid, self.received_uuid

    @property
    def replica_identity(self) -> str:
        """The received UUID that a copy of this snapshot carries at the destination after 'btrfs receive'."""
        return self.received_uuid or self.uuid


def normalize_uuid(value: str | None) -> str | None:
    """Maps btrfs placeholders for an absent UUID to None."""
    value = (value or "").strip()
    return None if value in ABSENT_UUIDS else value


def parse_creation_time(value: str) -> float | None:
    """Parses 'Creation time' of 'btrfs subvolume show' into POSIX seconds, e.g. '2024-01-31 23:59:59 +0100'."""
    value = value.strip()
    for fmt in _CREATION_TIME_FORMATS:
        try:
            return datetime.strptime(value, fmt).timestamp()
        except ValueError:
            continue
    return None


def parse_subvolume_show(path: str, text: str) -> Snapshot | None:
    """Parses the output of ``btrfs subvolume show <path>``; returns None unless the output describes a subvolume."""
    fields: dict[str, str] = {}
    for line in text.splitlines():
        match = _FIELD_REGEX.match(line)
        if match:
            fields.setdefault(match.group(1).strip(), match.group(2).strip())
    uuid: str | None = normalize_uuid(fields.get("UUID"))
    if uuid is None:
        return None
    return Snapshot(
        path=path,
        creation_time=parse_creation_time(fields.get("Creation time", "")),
        uuid=uuid,
        received_uuid=normalize_uuid(fields.get("Received UUID")),
        parent_uuid=normalize_uuid(fields.get("Parent UUID")),
        readonly="readonly" in fields.get("Flags", "").split(),
    )


def snapshot_sort_key(snapshot: Snapshot) -> tuple:
    """Orders by creation time, then by version-aware name; snapshots with unparsable creation time sort first."""
    ctime: float | None = snapshot.creation_time
    return (ctime is not None, ctime or 0.0, version_sort_key(snapshot.name), snapshot.path)


def show_subvolumes(session: SyncSession, remote: Remote, paths: list[str]) -> dict[str, Snapshot | None]:
    """Runs ``btrfs subvolume show`` for all given paths via one shell invocation on the remote; maps each path to its
    parsed Snapshot, or to None if the path is not a subvolume."""
    results: dict[str, Snapshot | None] = {}
    if len(paths) == 0:
        return results
    p = session.params
    btrfs: str = f"{remote.sudo} {p.btrfs_program}".strip()
    script: str = f"for p; do printf '%s%s\\n' '{BLOCK_MARKER}' \"$p\"; {btrfs} subvolume show \"$p\" || true; done"
    cmd: list[str] = [p.shell_program, "-c", script, p.shell_program] + paths
    stdout: str = run_ssh_command(session, remote, LOG_TRACE, print_stderr=False, cmd=cmd)
    for block in stdout.split(BLOCK_MARKER)[1:]:
        path, _, text = block.partition("\n")
        results[path] = parse_subvolume_show(path, text)
    for path in paths:
        results.setdefault(path, None)
    return results


def list_directories(session: SyncSession, remote: Remote, root: str, min_depth: int, max_depth: int) -> list[str]:
    """Returns the directories between ``min_depth`` and ``max_depth`` levels below ``root``, in sorted order."""
    p = session.params
    cmd: list[str] = p.split_args(f"{remote.sudo} find", root, "-mindepth", str(min_depth), "-maxdepth", str(max_depth))
    cmd += ["-type", "d"]
    stdout: str = run_ssh_command(session, remote, LOG_TRACE, cmd=cmd)
    return sorted(line for line in stdout.splitlines() if line)


def resolve_root(session: SyncSession, remote: Remote, root: str) -> str:
    """Resolves ``root`` to an absolute path on the remote, or dies if it does not exist or is not accessible."""
    p = session.params
    try:
        stdout: str = run_ssh_command(session, remote, LOG_TRACE, print_stderr=False, cmd=["realpath", "-e", root])
    except subprocess.CalledProcessError as e:
        die(f"Cannot access {remote.location} path: {root}: {stderr_to_str(e.stderr).strip()}")
    resolved: str = stdout.strip()
    if not resolved.startswith("/"):
        die(f"Cannot resolve {remote.location} path to an absolute path: {root}")
    p.log.log(LOG_TRACE, "Resolved %s path %s -> %s", remote.location, root, resolved)
    return resolved


def discover(session: SyncSession, remote: Remote, root_paths: list[str], max_depth: int = 1) -> list[Snapshot]:
    """Returns the read-only snapshots found at or below the given roots, globally sorted by creation time ascending.

    A root that is itself a read-only subvolume is emitted as is; otherwise the directories up to ``max_depth`` levels below
    it are tested, and entries that are not read-only subvolumes are skipped silently.
    """
    log = session.params.log
    snapshots: dict[str, Snapshot] = {}
    for root in root_paths:
        resolved: str = resolve_root(session, remote, root)
        snapshot: Snapshot | None = show_subvolumes(session, remote, [resolved])[resolved]
        if snapshot is not None and snapshot.readonly:
            snapshots.setdefault(snapshot.path, snapshot)
            continue
        children: list[str] = list_directories(session, remote, resolved, min_depth=1, max_depth=max_depth)
        for child, snapshot in show_subvolumes(session, remote, children).items():
            if snapshot is not None and snapshot.readonly:
                snapshots.setdefault(child, snapshot)
            else:
                log.log(LOG_TRACE, "Skipping non-snapshot %s path: %s", remote.location, child)
    return sorted(snapshots.values(), key=snapshot_sort_key)
