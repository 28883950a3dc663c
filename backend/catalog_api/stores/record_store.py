"""In-memory record store serving the active catalog snapshot."""
from __future__ import annotations

import heapq
import logging
import re
import unicodedata
from bisect import bisect_left
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Sequence

from ..schemas import CatalogRecord
from .snapshot_file import (
    LoadError,
    SchemaMismatchError,
    SnapshotCorruptError,
    SnapshotIoError,
    read_snapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 50

_TOKEN_SPLIT = re.compile(r"[\W_]+")
_PREFIX_CEILING = "\U0010ffff"

__all__ = [
    "DEFAULT_SEARCH_LIMIT",
    "LoadError",
    "RecordStore",
    "SchemaMismatchError",
    "Snapshot",
    "SnapshotCorruptError",
    "SnapshotHandle",
    "SnapshotInfo",
    "SnapshotIoError",
    "normalize_text",
    "tokenize",
]


def normalize_text(value: str) -> str:
    """Case-fold ``value`` and collapse internal whitespace."""

    folded = unicodedata.normalize("NFKC", value).casefold()
    return " ".join(folded.split())


def tokenize(normalized: str) -> tuple[str, ...]:
    """Split normalised text into alphanumeric word tokens."""

    return tuple(token for token in _TOKEN_SPLIT.split(normalized) if token)


@dataclass(slots=True, frozen=True)
class SnapshotInfo:
    """Summary of a loaded snapshot generation."""

    generation: int
    schema_version: int
    path: str
    record_count: int
    rejected: int
    loaded_at: datetime
    generated_at: datetime | None


class Snapshot:
    """Immutable, generation-tagged set of catalog records with its search index.

    Ranking order is ``(-sales_snapshot, asset_id)`` everywhere; posting lists
    and the scan list are materialised in that order so search only has to
    walk them front to back.
    """

    def __init__(
        self,
        *,
        generation: int,
        schema_version: int,
        path: str,
        records: Sequence[CatalogRecord],
        rejected: int = 0,
        generated_at: datetime | None = None,
    ) -> None:
        self.generation = generation
        self.schema_version = schema_version
        self.path = path
        self.rejected = rejected
        self.generated_at = generated_at
        self.loaded_at = datetime.now(timezone.utc)

        self._records: dict[int, CatalogRecord] = {}
        for record in records:
            if record.asset_id in self._records:
                logger.warning("Duplicate asset id %s in snapshot; keeping first", record.asset_id)
                continue
            self._records[record.asset_id] = record

        ranked = sorted(self._records.values(), key=lambda r: (-r.sales_snapshot, r.asset_id))
        self._rank: dict[int, int] = {record.asset_id: index for index, record in enumerate(ranked)}
        self._ranked: list[tuple[str, int]] = [
            (normalize_text(record.name), record.asset_id) for record in ranked
        ]

        by_name = sorted(self._ranked)
        self._name_keys: list[str] = [name for name, _ in by_name]
        self._name_ids: list[int] = [asset_id for _, asset_id in by_name]

        postings: dict[str, list[int]] = {}
        for name, asset_id in self._ranked:
            for token in set(tokenize(name)):
                postings.setdefault(token, []).append(asset_id)
        self._vocabulary: list[str] = sorted(postings)
        self._postings: dict[str, tuple[int, ...]] = {
            token: tuple(ids) for token, ids in postings.items()
        }
        self._ids_ascending: list[int] = sorted(self._records)

        self._refs = 0
        self._retired = False
        self._discarded = False

    def __len__(self) -> int:
        return len(self._records)

    @property
    def discarded(self) -> bool:
        return self._discarded

    def info(self) -> SnapshotInfo:
        return SnapshotInfo(
            generation=self.generation,
            schema_version=self.schema_version,
            path=self.path,
            record_count=len(self._records),
            rejected=self.rejected,
            loaded_at=self.loaded_at,
            generated_at=self.generated_at,
        )

    def get(self, asset_id: int) -> CatalogRecord | None:
        return self._records.get(asset_id)

    def count(self) -> int:
        return len(self._records)

    def list_records(self, offset: int = 0, limit: int = DEFAULT_SEARCH_LIMIT) -> list[CatalogRecord]:
        """Return records ordered by asset id."""

        start = max(offset, 0)
        window = self._ids_ascending[start : start + max(limit, 0)]
        return [self._records[asset_id] for asset_id in window]

    def search(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[CatalogRecord]:
        """Return up to ``limit`` records whose name matches ``query``.

        A name matches when the case-folded query is a substring of it, or when
        every query token is a prefix of one of its word tokens. Names that
        start with the query rank first; ties break on snapshot sales
        (descending) and then asset id.
        """

        needle = normalize_text(query)
        if not needle or limit <= 0:
            return []

        lo = bisect_left(self._name_keys, needle)
        hi = bisect_left(self._name_keys, needle + _PREFIX_CEILING, lo)
        leading = heapq.nsmallest(limit, self._name_ids[lo:hi], key=self._rank.__getitem__)
        if len(leading) >= limit:
            return [self._records[asset_id] for asset_id in leading]

        query_tokens = tokenize(needle)
        token_hits: frozenset[int] = frozenset()
        if query_tokens and query_tokens != (needle,):
            token_hits = self._token_matches(query_tokens)

        needed = limit - len(leading)
        trailing: list[int] = []
        for name, asset_id in self._ranked:
            if name.startswith(needle):
                continue
            if needle in name or asset_id in token_hits:
                trailing.append(asset_id)
                if len(trailing) >= needed:
                    break

        return [self._records[asset_id] for asset_id in leading + trailing]

    def _token_matches(self, query_tokens: Sequence[str]) -> frozenset[int]:
        """Ids whose names contain, for every query token, a word starting with it."""

        matched: set[int] | None = None
        for token in sorted(set(query_tokens), key=len, reverse=True):
            lo = bisect_left(self._vocabulary, token)
            hi = bisect_left(self._vocabulary, token + _PREFIX_CEILING, lo)
            ids: set[int] = set()
            for word in self._vocabulary[lo:hi]:
                ids.update(self._postings[word])
            matched = ids if matched is None else matched & ids
            if not matched:
                return frozenset()
        return frozenset(matched or ())

    def _discard(self) -> None:
        self._records = {}
        self._rank = {}
        self._ranked = []
        self._name_keys = []
        self._name_ids = []
        self._vocabulary = []
        self._postings = {}
        self._ids_ascending = []
        self._discarded = True


class SnapshotHandle:
    """Reference to a snapshot generation held for the duration of a query."""

    def __init__(self, store: RecordStore, snapshot: Snapshot) -> None:
        self._store = store
        self._snapshot = snapshot
        self._released = False

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def generation(self) -> int:
        return self._snapshot.generation

    def release(self) -> None:
        self._store._release(self)

    def __enter__(self) -> SnapshotHandle:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class RecordStore:
    """Owns the active snapshot generation and hands out counted references.

    Swapping generations is a single assignment under the store lock. A
    superseded generation stays intact while any handle references it and is
    discarded when the last one is released.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._active: Snapshot | None = None
        self._retained: dict[int, Snapshot] = {}
        self._generation = 0

    # ------------------------------------------------------------------
    # Loading and activation

    def read(self, path: str | Path) -> Snapshot:
        """Parse, validate and index a snapshot file without activating it."""

        contents = read_snapshot(path)
        with self._lock:
            self._generation += 1
            generation = self._generation
        snapshot = Snapshot(
            generation=generation,
            schema_version=contents.schema_version,
            path=str(contents.path),
            records=contents.records,
            rejected=contents.rejected,
            generated_at=contents.generated_at,
        )
        logger.info(
            "Indexed snapshot generation %d (%d records, %d rejected) from %s",
            generation,
            len(snapshot),
            snapshot.rejected,
            snapshot.path,
        )
        return snapshot

    def activate(self, snapshot: Snapshot) -> Snapshot:
        """Make ``snapshot`` the generation served to new handles."""

        with self._lock:
            previous = self._active
            self._active = snapshot
            if previous is not None and previous is not snapshot:
                self._retire_locked(previous)
        logger.info("Activated snapshot generation %d", snapshot.generation)
        return snapshot

    def load(self, path: str | Path) -> Snapshot:
        """Read ``path`` and activate it; the current generation survives a failure."""

        return self.activate(self.read(path))

    def unload(self) -> None:
        """Stop serving the active generation."""

        with self._lock:
            previous = self._active
            self._active = None
            if previous is not None:
                self._retire_locked(previous)

    # ------------------------------------------------------------------
    # Handles

    def acquire(self) -> SnapshotHandle | None:
        """Return a handle on the active generation, or ``None`` when empty."""

        with self._lock:
            snapshot = self._active
            if snapshot is None:
                return None
            snapshot._refs += 1
        return SnapshotHandle(self, snapshot)

    def _release(self, handle: SnapshotHandle) -> None:
        snapshot = handle._snapshot
        with self._lock:
            if handle._released:
                return
            handle._released = True
            snapshot._refs -= 1
            if snapshot._retired and snapshot._refs <= 0:
                self._retained.pop(snapshot.generation, None)
                self._discard_locked(snapshot)

    def _retire_locked(self, snapshot: Snapshot) -> None:
        snapshot._retired = True
        if snapshot._refs <= 0:
            self._discard_locked(snapshot)
        else:
            self._retained[snapshot.generation] = snapshot

    def _discard_locked(self, snapshot: Snapshot) -> None:
        if snapshot.discarded:
            return
        snapshot._discard()
        logger.info("Discarded snapshot generation %d", snapshot.generation)

    # ------------------------------------------------------------------
    # Convenience reads

    @property
    def ready(self) -> bool:
        with self._lock:
            return self._active is not None

    def active_info(self) -> SnapshotInfo | None:
        with self._lock:
            snapshot = self._active
            return snapshot.info() if snapshot is not None else None

    def retained_generations(self) -> list[int]:
        """Superseded generations still pinned by outstanding handles."""

        with self._lock:
            return sorted(self._retained)

    def get(self, asset_id: int) -> CatalogRecord | None:
        handle = self.acquire()
        if handle is None:
            return None
        with handle:
            return handle.snapshot.get(asset_id)

    def search(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[CatalogRecord]:
        handle = self.acquire()
        if handle is None:
            return []
        with handle:
            return handle.snapshot.search(query, limit)

    def count(self) -> int:
        handle = self.acquire()
        if handle is None:
            return 0
        with handle:
            return handle.snapshot.count()

    def list_records(self, offset: int = 0, limit: int = DEFAULT_SEARCH_LIMIT) -> list[CatalogRecord]:
        handle = self.acquire()
        if handle is None:
            return []
        with handle:
            return handle.snapshot.list_records(offset, limit)
