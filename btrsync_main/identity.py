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
"""Lookup tables that map snapshot identities to destination paths; answers whether a source snapshot already exists at the
destination.

A subvolume created by 'btrfs receive' carries the UUID of the sent subvolume as its received UUID, so the received UUID is
the key by which a destination snapshot is matched back to its source. Destination subvolumes without a received UUID were not
created by a receive and are excluded from matching, although they still count for retention.
"""

from __future__ import (
    annotations,
)
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    TYPE_CHECKING,
    NamedTuple,
)

from btrsync_main.catalog import (
    Snapshot,
    list_directories,
    resolve_root,
    show_subvolumes,
    snapshot_sort_key,
)
from btrsync_main.utils import (
    LOG_TRACE,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from btrsync_main.btrsync import (
        SyncSession,
    )
    from btrsync_main.configuration import (
        Remote,
    )


#############################################################################
class IndexEntry(NamedTuple):
    """Destination path and creation time of the subvolume that carries a given identity."""

    path: str
    creation_time: float | None


#############################################################################
@dataclass
class DestinationIndex:
    """Maps identities (received UUIDs) to destination paths, plus all destination paths in creation order.

    Only the transfer orchestrator and retention mutate an index; seed selection only reads it.
    """

    root: str
    entries: dict[str, IndexEntry] = field(default_factory=dict)
    paths: list[str] = field(default_factory=list)

    def __contains__(self, identity: object) -> bool:
        return identity in self.entries

    def get(self, identity: str | None) -> IndexEntry | None:
        """Returns the entry for the given identity, or None."""
        return None if identity is None else self.entries.get(identity)

    def add(self, identity: str, path: str, creation_time: float | None) -> None:
        """Registers a freshly received destination snapshot; a path maps to exactly one identity."""
        if path in self.paths:
            self.entries = {key: entry for key, entry in self.entries.items() if entry.path != path}
        else:
            self.paths.append(path)
        self.entries[identity] = IndexEntry(path, creation_time)

    def remove(self, path: str) -> None:
        """Forgets a destination snapshot, e.g. after it was deleted."""
        if path in self.paths:
            self.paths.remove(path)
        self.entries = {key: entry for key, entry in self.entries.items() if entry.path != path}


def build_index(session: SyncSession, remote: Remote, destination_root: str, parent_depth: int) -> DestinationIndex:
    """Lists the destination subvolumes exactly ``parent_depth + 1`` levels below the destination root and indexes them."""
    log = session.params.log
    root: str = resolve_root(session, remote, destination_root)
    depth: int = parent_depth + 1
    candidates: list[str] = list_directories(session, remote, root, min_depth=depth, max_depth=depth)
    subvolumes: list[Snapshot] = [s for s in show_subvolumes(session, remote, candidates).values() if s is not None]
    index = DestinationIndex(root=root)
    for subvolume in sorted(subvolumes, key=snapshot_sort_key):
        index.paths.append(subvolume.path)
        if subvolume.received_uuid is None:
            log.log(LOG_TRACE, "Excluding dst subvolume without received UUID from matching: %s", subvolume.path)
            continue
        index.entries[subvolume.received_uuid] = IndexEntry(subvolume.path, subvolume.creation_time)
    log.debug("Found %s dst snapshots, %s of which carry a received UUID", len(index.paths), len(index.entries))
    return index


def exists_at_destination(snapshot: Snapshot, index: DestinationIndex) -> bool:
    """Returns True if the snapshot, or the snapshot it was itself received from, is already present at the destination."""
    return snapshot.uuid in index or (snapshot.received_uuid is not None and snapshot.received_uuid in index)
