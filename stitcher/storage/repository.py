from __future__ import annotations

import zlib
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, List

from stitcher.models.domain import StitchJob


class _Shard:
    def __init__(self) -> None:
        self.jobs: Dict[str, StitchJob] = {}
        self.lock = Lock()


class JobRepository:
    """In-memory job table split into independently locked shards.

    A job id always hashes to the same shard, so writers for unrelated jobs
    rarely contend and no operation holds more than one shard lock.
    """

    def __init__(self, shards: int = 16) -> None:
        self._shards: List[_Shard] = [_Shard() for _ in range(max(1, shards))]

    def _shard(self, job_id: str) -> _Shard:
        return self._shards[zlib.crc32(job_id.encode("utf-8")) % len(self._shards)]

    def save(self, job: StitchJob) -> StitchJob:
        shard = self._shard(job.id)
        with shard.lock:
            shard.jobs[job.id] = job.model_copy(deep=True)
        return job

    def get(self, job_id: str) -> StitchJob | None:
        shard = self._shard(job_id)
        with shard.lock:
            job = shard.jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def update(self, job_id: str, **changes: Any) -> StitchJob | None:
        """Apply field changes atomically; progress never moves backwards."""
        shard = self._shard(job_id)
        with shard.lock:
            job = shard.jobs.get(job_id)
            if job is None:
                return None
            if "progress" in changes:
                changes["progress"] = max(job.progress, min(100, int(changes["progress"])))
            changes.setdefault("last_updated", datetime.utcnow())
            updated = job.model_copy(update=changes)
            shard.jobs[job_id] = updated
            return updated.model_copy(deep=True)

    def list(self) -> List[StitchJob]:
        jobs: List[StitchJob] = []
        for shard in self._shards:
            with shard.lock:
                jobs.extend(job.model_copy(deep=True) for job in shard.jobs.values())
        return jobs

    def count(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.jobs)
        return total

    def evict(self, predicate: Callable[[StitchJob], bool]) -> List[str]:
        """Delete every job matching ``predicate``, one shard at a time."""
        evicted: List[str] = []
        for shard in self._shards:
            with shard.lock:
                stale = [job_id for job_id, job in shard.jobs.items() if predicate(job)]
                for job_id in stale:
                    del shard.jobs[job_id]
            evicted.extend(stale)
        return evicted
