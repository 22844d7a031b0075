# priorities/engine/store.py

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from django.conf import settings
from django.core.cache import caches

from .contracts import ManualOverride, StrategicScore
from .exceptions import PersistenceConflict

# Configure logging for distributed systems monitoring
logger = logging.getLogger(__name__)

DEFAULT_TTL = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class MergeReport:
    """Outcome of a partial merge-upsert."""

    written: Tuple[str, ...] = ()
    conflicts: Tuple[PersistenceConflict, ...] = field(default_factory=tuple)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)


class _CacheBackedStore:
    """
    Shared plumbing for stores persisted through Django's cache framework.

    Each outcome owns one map entry ({task_id: payload}). Writers merge by
    task id under a process-local lock; across processes the read-merge-write
    is last-write-wins, and the timestamps carried by each payload decide
    which write survives.
    """

    namespace = "strategic"

    def __init__(
        self,
        ttl: Optional[int] = None,
        version: str = "v1",
        cache_alias: Optional[str] = None,
    ):
        """
        Args:
            ttl: Time-to-live in seconds (default: 7 days).
            version: Key versioning to invalidate payload schemas during deployments.
            cache_alias: The Django cache alias to utilize.
        """
        self.ttl = ttl or getattr(settings, "STRATEGIC_STORE_TTL", DEFAULT_TTL)
        self.version = version
        self.cache_alias = cache_alias or getattr(settings, "STRATEGIC_STORE_CACHE_ALIAS", "default")
        self._lock = threading.RLock()

    @property
    def cache(self):
        return caches[self.cache_alias]

    def _key(self, outcome_id: str, suffix: str = "map") -> str:
        return f"{self.namespace}:{self.version}:{outcome_id}:{suffix}"

    def _read_map(self, outcome_id: str) -> Dict[str, dict]:
        return dict(self.cache.get(self._key(outcome_id)) or {})

    def _write_map(self, outcome_id: str, payload: Dict[str, dict]) -> None:
        self.cache.set(self._key(outcome_id), payload, timeout=self.ttl)


class ScoreStore(_CacheBackedStore):
    """
    Strategic scores for the active ranking run of each outcome.

    A run is identified by its session id. start_run() supersedes the
    previous run entirely; merge() rejects writes that carry any other
    session id, so a late retry success from an old run cannot clobber
    fresher data.
    """

    namespace = "strategic_scores"

    def start_run(self, outcome_id: str, session_id: str) -> None:
        with self._lock:
            self.cache.set(self._key(outcome_id, "session"), session_id, timeout=self.ttl)
            self._write_map(outcome_id, {})
        logger.info(f"ScoreStore: started run {session_id} for outcome {outcome_id}")

    def active_session(self, outcome_id: str) -> Optional[str]:
        return self.cache.get(self._key(outcome_id, "session"))

    def get_scores(self, outcome_id: str) -> Dict[str, StrategicScore]:
        return {
            task_id: StrategicScore.from_dict(payload)
            for task_id, payload in self._read_map(outcome_id).items()
        }

    def get_score(self, outcome_id: str, task_id: str) -> Optional[StrategicScore]:
        payload = self._read_map(outcome_id).get(task_id)
        return StrategicScore.from_dict(payload) if payload else None

    def merge(
        self,
        outcome_id: str,
        scores: Mapping[str, StrategicScore],
        session_id: str,
    ) -> MergeReport:
        """
        Partial merge-upsert keyed by task id.

        Replaying the same write is a no-op, and an older scored_at never
        replaces a newer one.
        """
        written: List[str] = []
        conflicts: List[PersistenceConflict] = []

        with self._lock:
            active = self.active_session(outcome_id)
            if active != session_id:
                for task_id in scores:
                    conflicts.append(
                        PersistenceConflict(task_id, f"session {session_id} superseded by {active}")
                    )
                logger.warning(
                    f"ScoreStore: rejected {len(scores)} stale write(s) for outcome {outcome_id} "
                    f"(session {session_id}, active {active})"
                )
                return MergeReport(conflicts=tuple(conflicts))

            current = self._read_map(outcome_id)
            for task_id, score in scores.items():
                existing = current.get(task_id)
                if existing is not None:
                    existing_score = StrategicScore.from_dict(existing)
                    if existing_score.scored_at > score.scored_at:
                        conflicts.append(PersistenceConflict(task_id, "newer score already stored"))
                        continue
                current[task_id] = {**score.to_dict(), "task_id": task_id}
                written.append(task_id)

            if written:
                self._write_map(outcome_id, current)

        for conflict in conflicts:
            logger.warning(f"ScoreStore: {conflict}")
        return MergeReport(written=tuple(written), conflicts=tuple(conflicts))


class OverrideStore(_CacheBackedStore):
    """Manual overrides per outcome, keyed by task id."""

    namespace = "strategic_overrides"

    def get_all(self, outcome_id: str) -> Dict[str, ManualOverride]:
        return {
            task_id: ManualOverride.from_dict(payload)
            for task_id, payload in self._read_map(outcome_id).items()
        }

    def get(self, outcome_id: str, task_id: str) -> Optional[ManualOverride]:
        payload = self._read_map(outcome_id).get(task_id)
        return ManualOverride.from_dict(payload) if payload else None

    def put(self, outcome_id: str, task_id: str, override: ManualOverride) -> MergeReport:
        with self._lock:
            current = self._read_map(outcome_id)
            existing = current.get(task_id)
            if existing is not None:
                existing_override = ManualOverride.from_dict(existing)
                if existing_override.timestamp > override.timestamp:
                    conflict = PersistenceConflict(task_id, "newer override already stored")
                    logger.warning(f"OverrideStore: {conflict}")
                    return MergeReport(conflicts=(conflict,))
            current[task_id] = override.to_dict()
            self._write_map(outcome_id, current)
        return MergeReport(written=(task_id,))

    def delete(self, outcome_id: str, task_id: str) -> bool:
        with self._lock:
            current = self._read_map(outcome_id)
            if task_id not in current:
                return False
            del current[task_id]
            self._write_map(outcome_id, current)
        return True

    def clear(self, outcome_id: str) -> int:
        with self._lock:
            count = len(self._read_map(outcome_id))
            self.cache.delete(self._key(outcome_id))
        return count
