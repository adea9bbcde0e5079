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
"""Picks the seed (the 'btrfs send -p' parent) for an incremental transfer.

Strategies are tried in order and the first one that returns a seed wins:

1. sequential: the snapshot most recently transferred during this run (only with --sequential),
2. exact parent: the candidate whose UUID, or identity at the destination, equals the parent UUID of the snapshot,
3. latest: the candidate with the latest creation time.

A candidate is a source snapshot whose copy already exists at the destination. Without candidates the transfer is full.
"""

from __future__ import (
    annotations,
)
from typing import (
    TYPE_CHECKING,
    Callable,
    NamedTuple,
)

from btrsync_main.catalog import (
    Snapshot,
)
from btrsync_main.identity import (
    DestinationIndex,
    IndexEntry,
)
from btrsync_main.utils import (
    LOG_TRACE,
    version_sort_key,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from btrsync_main.btrsync import (
        SyncSession,
    )


#############################################################################
class Seed(NamedTuple):
    """A source snapshot usable as delta base, together with the destination path of its copy."""

    src_path: str
    dst_path: str
    uuid: str  # uuid of the source snapshot
    creation_time: float | None  # creation time of the source snapshot


SeedStrategy = Callable[[Snapshot, DestinationIndex, "SyncSession"], "Seed | None"]


def choose_seed(snapshot: Snapshot, index: DestinationIndex, session: SyncSession) -> Seed | None:
    """Returns the seed for an incremental transfer of ``snapshot``, or None if a full transfer is required."""
    log = session.params.log
    for strategy in SEED_STRATEGIES:
        seed: Seed | None = strategy(snapshot, index, session)
        if seed is not None:
            log.log(LOG_TRACE, "Seed strategy %s picked %s for %s", strategy.__name__, seed.src_path, snapshot.path)
            return seed
    return None


def sequential_seed(snapshot: Snapshot, index: DestinationIndex, session: SyncSession) -> Seed | None:
    """The most recently transferred source snapshot of this run, if --sequential is active."""
    if not session.params.sequential_seed or len(session.next_seed_candidates) == 0:
        return None
    previous: Snapshot | None = session.source_by_path.get(session.next_seed_candidates[-1])
    if previous is None or _is_self(previous, snapshot):
        return None
    entry: IndexEntry | None = index.get(previous.replica_identity)
    if entry is None:
        return None
    return Seed(previous.path, entry.path, previous.uuid, previous.creation_time)


def exact_parent_seed(snapshot: Snapshot, index: DestinationIndex, session: SyncSession) -> Seed | None:
    """The candidate that continues the chain, i.e. whose UUID, or the identity by which it was matched at the destination,
    equals the recorded parent UUID of the snapshot."""
    if snapshot.parent_uuid is None:
        return None
    parent_uuid: str = snapshot.parent_uuid
    candidates: list[Seed] = [
        seed
        for identity, seed in _identified_candidates(snapshot, index, session)
        if parent_uuid in (seed.uuid, identity)
    ]
    return _latest(candidates)


def latest_seed(snapshot: Snapshot, index: DestinationIndex, session: SyncSession) -> Seed | None:
    """Best effort: the candidate with the globally latest creation time; accepts a larger delta over no delta at all."""
    return _latest(find_candidates(snapshot, index, session))


SEED_STRATEGIES: tuple[SeedStrategy, ...] = (sequential_seed, exact_parent_seed, latest_seed)


def find_candidates(snapshot: Snapshot, index: DestinationIndex, session: SyncSession) -> list[Seed]:
    """Returns, for every identity in the destination index, the source snapshot that carries it, except ``snapshot``.

    A source snapshot carries an identity if its UUID equals it or, failing that, if its own received UUID equals it.
    """
    return [seed for _, seed in _identified_candidates(snapshot, index, session)]


def _identified_candidates(snapshot: Snapshot, index: DestinationIndex, session: SyncSession) -> list[tuple[str, Seed]]:
    """Pairs each candidate seed with the destination index identity that matched it."""
    by_uuid: dict[str, Snapshot] = session.source_by_uuid
    by_received_uuid: dict[str, Snapshot] | None = None
    candidates: list[tuple[str, Seed]] = []
    for identity, entry in index.entries.items():
        source: Snapshot | None = by_uuid.get(identity)
        if source is None:
            by_received_uuid = session.source_by_received_uuid() if by_received_uuid is None else by_received_uuid
            source = by_received_uuid.get(identity)
        if source is None or _is_self(source, snapshot):
            continue
        candidates.append((identity, Seed(source.path, entry.path, source.uuid, source.creation_time)))
    return candidates


def _is_self(candidate: Snapshot, snapshot: Snapshot) -> bool:
    """A snapshot is never used as a seed for itself, nor is another snapshot with the same base name."""
    return candidate.path == snapshot.path or candidate.uuid == snapshot.uuid or candidate.name == snapshot.name


def _latest(candidates: list[Seed]) -> Seed | None:
    if len(candidates) == 0:
        return None
    return max(candidates, key=lambda seed: (seed.creation_time or 0.0, version_sort_key(seed.src_path)))
