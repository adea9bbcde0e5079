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
"""Retention and cleanup of destination snapshots after replication: keeps only the newest N snapshots and optionally deletes
orphans, i.e. destination snapshots whose name no longer matches any source snapshot.

Deletion failures are logged and otherwise ignored; a snapshot that could not be deleted this time is a candidate again on the
next run.
"""

from __future__ import (
    annotations,
)
from typing import (
    TYPE_CHECKING,
    Iterable,
)

from btrsync_main.catalog import (
    Snapshot,
)
from btrsync_main.connection import (
    try_ssh_command,
)
from btrsync_main.identity import (
    DestinationIndex,
)
from btrsync_main.retry import (
    RetryableError,
)
from btrsync_main.utils import (
    LOG_DEBUG,
    basename,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from btrsync_main.btrsync import (
        SyncSession,
    )
    from btrsync_main.configuration import (
        Remote,
    )


def prune(destination_paths: list[str], keep: int) -> list[str]:
    """Returns the ``count - keep`` oldest paths; ``destination_paths`` is in arrival order, oldest first."""
    excess: int = len(destination_paths) - keep
    return destination_paths[0:excess] if excess > 0 else []


def prune_orphans(destination_paths: list[str], source_base_names: Iterable[str]) -> list[str]:
    """Returns the paths whose base name matches no base name in the current source set."""
    names: set[str] = set(source_base_names)
    return [path for path in destination_paths if basename(path) not in names]


def delete_subvolumes(session: SyncSession, remote: Remote, paths: list[str]) -> list[str]:
    """Deletes the given subvolumes one by one and returns those that were deleted (or would be, in dry-run mode)."""
    p, log = session.params, session.params.log
    deleted: list[str] = []
    for path in paths:
        cmd: list[str] = p.split_args(f"{remote.sudo} {p.btrfs_program} subvolume delete", path)
        try:
            try_ssh_command(session, remote, LOG_DEBUG, is_dry=p.dry_run, print_stdout=True, cmd=cmd)
        except RetryableError as e:
            log.warning("Cannot delete %s subvolume %s: %s", remote.location, path, e.__cause__)
        else:
            deleted.append(path)
    return deleted


def apply_retention(session: SyncSession, index: DestinationIndex, sources: list[Snapshot]) -> None:
    """Deletes orphans (with --delete) first, then the oldest destination snapshots beyond --keep."""
    p, log = session.params, session.params.log
    if p.delete_orphans:
        orphans: list[str] = prune_orphans(index.paths, (snapshot.name for snapshot in sources))
        if len(orphans) > 0:
            log.info(p.dry("Deleting %s orphan dst snapshots: %s"), len(orphans), orphans)
        _delete_and_forget(session, index, orphans)
    if p.keep is not None:
        expired: list[str] = prune(index.paths, p.keep)
        if len(expired) > 0:
            log.info(p.dry("Deleting %s dst snapshots beyond --keep=%s: %s"), len(expired), p.keep, expired)
        _delete_and_forget(session, index, expired)


def _delete_and_forget(session: SyncSession, index: DestinationIndex, paths: list[str]) -> None:
    for path in delete_subvolumes(session, session.params.dst, paths):
        index.remove(path)
        session.num_snapshots_deleted += 1
