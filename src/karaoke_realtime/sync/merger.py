"""Incremental state merger for cached topic snapshots."""

import copy
import hashlib
import json
import time
from typing import Any, Callable, Dict, List, Optional

from .exceptions import DataIntegrityError
from .logging_config import get_logger, log_sync_event
from .models import CachedTopic, DeltaAction, DeltaChange, MergeResult, TopicKey, TopicUpdate


def checksum(snapshot: Any) -> str:
    """SHA-256 over canonical JSON, independent of key insertion order."""
    canonical = json.dumps(snapshot, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _index_of(items: List[Any], item_id: Any) -> int:
    for index, item in enumerate(items):
        if isinstance(item, dict) and item.get("id") == item_id:
            return index
    return -1


def apply_changes(items: List[Any], changes: List[DeltaChange]) -> List[Any]:
    """Apply changes in order to a copy of ``items`` and return it.

    ``add`` of an existing id and ``update`` or ``delete`` of a missing id
    are no-ops, so replaying a change list leaves the result unchanged for
    everything except ``reorder``.
    """
    result = list(items)

    for change in changes:
        target = change.target_id

        if change.action == DeltaAction.ADD:
            if change.item is None or _index_of(result, target) != -1:
                continue
            if change.position is not None and change.position >= 0:
                result.insert(change.position, change.item)
            else:
                result.append(change.item)

        elif change.action == DeltaAction.UPDATE:
            index = _index_of(result, target)
            if index != -1 and change.item is not None:
                result[index] = {**result[index], **change.item}

        elif change.action == DeltaAction.DELETE:
            result = [
                item for item in result
                if not (isinstance(item, dict) and item.get("id") == target)
            ]

        elif change.action == DeltaAction.REORDER:
            if change.from_index is None or change.to_index is None:
                continue
            if not (0 <= change.from_index < len(result)) or change.to_index < 0:
                continue
            moved = result.pop(change.from_index)
            result.insert(change.to_index, moved)

    return result


class IncrementalStateMerger:
    """Keeps a per-topic snapshot cache and merges inbound updates into it.

    Every stored snapshot is paired with its checksum; the pair is replaced
    together so the two never disagree.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._topics: Dict[TopicKey, CachedTopic] = {}
        self._last_sync_at: Dict[TopicKey, int] = {}
        self._clock = clock
        self.logger = get_logger(__name__)

    def apply(self, update: TopicUpdate) -> MergeResult:
        """Merge ``update`` into the cache and return the resulting full state.

        Raises:
            DataIntegrityError: the update carried a checksum that the
                resulting state does not match. The topic is cleared.
        """
        key = update.topic_key

        if update.is_incremental:
            cached = self._topics.get(key)
            if cached is None or not isinstance(cached.snapshot, list):
                log_sync_event(
                    self.logger, str(key), "needs_snapshot",
                    f"Incremental update for {key} has no list baseline, full snapshot required"
                )
                return MergeResult(key=key, data=None, checksum=None, needs_snapshot=True)

            snapshot = apply_changes(cached.snapshot, update.changes)
            applied = len(update.changes)
        else:
            snapshot = update.data if update.data is not None else update.raw
            snapshot = copy.deepcopy(snapshot)
            applied = 0

        digest = checksum(snapshot)

        if update.checksum and update.checksum != digest:
            self.clear(key)
            log_sync_event(
                self.logger, str(key), "integrity_failed",
                f"Checksum mismatch for {key}, cache cleared",
                expected_checksum=update.checksum, actual_checksum=digest
            )
            raise DataIntegrityError(str(key), update.checksum, digest)

        self._store(key, snapshot, digest)

        log_sync_event(
            self.logger, str(key), "merged" if update.is_incremental else "snapshot",
            f"Updated {key}: {applied} changes applied, {self._size(snapshot)} items"
        )
        return MergeResult(key=key, data=snapshot, checksum=digest, applied_changes=applied)

    def _store(self, key: TopicKey, snapshot: Any, digest: str) -> None:
        self._topics[key] = CachedTopic(
            key=key,
            snapshot=snapshot,
            checksum=digest,
            last_updated_at=self._clock(),
        )
        self._last_sync_at[key] = int(time.time() * 1000)

    @staticmethod
    def _size(snapshot: Any) -> int:
        return len(snapshot) if isinstance(snapshot, (list, dict)) else 1

    def get(self, key: TopicKey) -> Optional[CachedTopic]:
        return self._topics.get(key)

    def snapshot(self, key: TopicKey) -> Optional[Any]:
        """Deep copy of the cached snapshot, or None."""
        cached = self._topics.get(key)
        return copy.deepcopy(cached.snapshot) if cached else None

    def checksum_of(self, key: TopicKey) -> Optional[str]:
        cached = self._topics.get(key)
        return cached.checksum if cached else None

    def last_sync_ms(self, key: TopicKey) -> int:
        """Wall-clock ms of the last stored snapshot, 0 when never synced."""
        return self._last_sync_at.get(key, 0)

    def topics(self) -> List[TopicKey]:
        return list(self._topics)

    def stale_topics(self, age_seconds: float) -> List[CachedTopic]:
        """Cached topics not updated within ``age_seconds``."""
        now = self._clock()
        return [
            cached for cached in self._topics.values()
            if now - cached.last_updated_at >= age_seconds
        ]

    def clear(self, key: Optional[TopicKey] = None) -> None:
        """Clear one topic or, without a key, the whole cache."""
        if key is None:
            count = len(self._topics)
            self._topics.clear()
            self._last_sync_at.clear()
            self.logger.info(f"Cleared all {count} cached topics")
            return

        self._topics.pop(key, None)
        self._last_sync_at.pop(key, None)
        log_sync_event(self.logger, str(key), "cleared", f"Cleared cached topic {key}")

    def __len__(self) -> int:
        return len(self._topics)

    def __contains__(self, key: TopicKey) -> bool:
        return key in self._topics
