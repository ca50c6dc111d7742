"""
Durable job and batch status for bulk onboarding.

Jobs are keyed by (tenant_id, job_id), batches by (job_id, batch_index).
Every write is a field-level merge, so workers updating different batches
never overwrite each other. Entries expire after the retention window.
"""
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import redis
from pydantic_core import to_jsonable_python

from corpwell.schemas.onboarding import BatchState, BatchStatus, JobStatus, OnboardingJob
from corpwell.services.errors import JobNotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _encode(fields: dict) -> dict[str, Any]:
    return {key: to_jsonable_python(value) for key, value in fields.items()}


def accept_batch_update(current_status: Optional[str], new_status: Optional[str]) -> bool:
    """Batch status only moves forward.

    A completed batch is final. A failed batch may still be overwritten by a
    later completed run, but never pushed back to queued/processing.
    """
    if current_status == BatchState.completed.value:
        return False
    if current_status == BatchState.failed.value:
        return new_status == BatchState.completed.value
    return True


class JobStore(ABC):
    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds

    def create_job(self, tenant_id, job_id: str, **meta) -> OnboardingJob:
        fields = {"status": JobStatus.started, "start_time": _now_utc(), **meta}
        fields.update(tenant_id=str(tenant_id), job_id=job_id)
        job = OnboardingJob.model_validate(_encode(fields))
        self._put_job(str(tenant_id), job_id, _encode(job.model_dump()))
        return job

    def update_job(self, tenant_id, job_id: str, **fields) -> None:
        fields["last_update"] = _now_utc()
        self._merge_job(str(tenant_id), job_id, _encode(fields))

    def get_job(self, tenant_id, job_id: str) -> OnboardingJob:
        data = self._get_job(str(tenant_id), job_id)
        if data is None:
            raise JobNotFoundError(f"Onboarding job {job_id} not found")
        return OnboardingJob.model_validate(data)

    def update_batch(self, job_id: str, batch_index: int, **fields) -> bool:
        """Merge fields into one batch entry. Returns False if the write was
        ignored because the batch had already reached a final state."""
        fields["updated_at"] = _now_utc()
        fields.update(job_id=job_id, batch_index=batch_index)
        return self._merge_batch(job_id, batch_index, _encode(fields))

    def list_batches(self, job_id: str) -> list[BatchStatus]:
        """Batches that have reported at least once, ordered by index."""
        rows = self._get_batches(job_id)
        return [BatchStatus.model_validate(row) for row in sorted(rows, key=lambda r: r["batch_index"])]

    def list_jobs(self, tenant_id) -> list[OnboardingJob]:
        jobs = [OnboardingJob.model_validate(d) for d in self._get_tenant_jobs(str(tenant_id))]
        return sorted(jobs, key=lambda j: j.start_time, reverse=True)

    @abstractmethod
    def _put_job(self, tenant_id: str, job_id: str, data: dict) -> None: ...

    @abstractmethod
    def _merge_job(self, tenant_id: str, job_id: str, fields: dict) -> None: ...

    @abstractmethod
    def _get_job(self, tenant_id: str, job_id: str) -> Optional[dict]: ...

    @abstractmethod
    def _merge_batch(self, job_id: str, batch_index: int, fields: dict) -> bool: ...

    @abstractmethod
    def _get_batches(self, job_id: str) -> list[dict]: ...

    @abstractmethod
    def _get_tenant_jobs(self, tenant_id: str) -> list[dict]: ...


class InMemoryJobStore(JobStore):
    """Process-local store. Used in tests and single-process deployments."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[tuple[str, str], tuple[dict, float]] = {}
        self._batches: dict[tuple[str, int], tuple[dict, float]] = {}

    def _expiry(self) -> float:
        return self._clock() + self.ttl_seconds

    def _live(self, entry) -> Optional[dict]:
        if entry is None or entry[1] <= self._clock():
            return None
        return entry[0]

    def _put_job(self, tenant_id, job_id, data):
        with self._lock:
            self._jobs[(tenant_id, job_id)] = (dict(data), self._expiry())

    def _merge_job(self, tenant_id, job_id, fields):
        with self._lock:
            current = self._live(self._jobs.get((tenant_id, job_id)))
            if current is None:
                raise JobNotFoundError(f"Onboarding job {job_id} not found")
            self._jobs[(tenant_id, job_id)] = ({**current, **fields}, self._expiry())

    def _get_job(self, tenant_id, job_id):
        with self._lock:
            data = self._live(self._jobs.get((tenant_id, job_id)))
            return dict(data) if data is not None else None

    def _merge_batch(self, job_id, batch_index, fields):
        with self._lock:
            current = self._live(self._batches.get((job_id, batch_index))) or {}
            if not accept_batch_update(current.get("status"), fields.get("status")):
                return False
            self._batches[(job_id, batch_index)] = ({**current, **fields}, self._expiry())
            return True

    def _get_batches(self, job_id):
        rows = []
        with self._lock:
            for (jid, _), entry in self._batches.items():
                data = self._live(entry)
                if jid == job_id and data is not None:
                    rows.append(dict(data))
        return rows

    def _get_tenant_jobs(self, tenant_id):
        rows = []
        with self._lock:
            for (tid, _), entry in self._jobs.items():
                data = self._live(entry)
                if tid == tenant_id and data is not None:
                    rows.append(dict(data))
        return rows

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            stale_jobs = [k for k, (_, exp) in self._jobs.items() if exp <= now]
            stale_batches = [k for k, (_, exp) in self._batches.items() if exp <= now]
            for k in stale_jobs:
                del self._jobs[k]
            for k in stale_batches:
                del self._batches[k]
        return len(stale_jobs) + len(stale_batches)


class RedisJobStore(JobStore):
    """Redis hashes, one field per attribute (JSON-encoded), TTL on every write."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = DEFAULT_TTL_SECONDS, prefix: str = "onboarding"):
        super().__init__(ttl_seconds)
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisJobStore":
        client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=5, socket_connect_timeout=5)
        return cls(client, **kwargs)

    # keys
    def _job_key(self, tenant_id, job_id):
        return f"{self._prefix}:job:{tenant_id}:{job_id}"

    def _batch_key(self, job_id, batch_index):
        return f"{self._prefix}:batch:{job_id}:{batch_index}"

    def _batch_index_key(self, job_id):
        return f"{self._prefix}:batches:{job_id}"

    def _tenant_index_key(self, tenant_id):
        return f"{self._prefix}:jobs:{tenant_id}"

    @contextmanager
    def _unavailable_on_error(self):
        try:
            yield
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            raise StoreUnavailableError(f"Job store unavailable: {e}") from e

    @staticmethod
    def _dumps(fields: dict) -> dict[str, str]:
        return {key: json.dumps(value) for key, value in fields.items()}

    @staticmethod
    def _loads(raw: dict) -> dict:
        return {key: json.loads(value) for key, value in raw.items()}

    def _put_job(self, tenant_id, job_id, data):
        key = self._job_key(tenant_id, job_id)
        index = self._tenant_index_key(tenant_id)
        with self._unavailable_on_error():
            pipe = self._redis.pipeline()
            pipe.hset(key, mapping=self._dumps(data))
            pipe.expire(key, self.ttl_seconds)
            pipe.sadd(index, job_id)
            pipe.expire(index, self.ttl_seconds)
            pipe.execute()

    def _merge_job(self, tenant_id, job_id, fields):
        key = self._job_key(tenant_id, job_id)
        with self._unavailable_on_error():
            if not self._redis.exists(key):
                raise JobNotFoundError(f"Onboarding job {job_id} not found")
            pipe = self._redis.pipeline()
            pipe.hset(key, mapping=self._dumps(fields))
            pipe.expire(key, self.ttl_seconds)
            pipe.execute()

    def _get_job(self, tenant_id, job_id):
        with self._unavailable_on_error():
            raw = self._redis.hgetall(self._job_key(tenant_id, job_id))
        return self._loads(raw) if raw else None

    def _merge_batch(self, job_id, batch_index, fields):
        key = self._batch_key(job_id, batch_index)
        index = self._batch_index_key(job_id)
        with self._unavailable_on_error():
            current = self._redis.hget(key, "status")
            if not accept_batch_update(json.loads(current) if current else None, fields.get("status")):
                return False
            pipe = self._redis.pipeline()
            pipe.hset(key, mapping=self._dumps(fields))
            pipe.expire(key, self.ttl_seconds)
            pipe.sadd(index, batch_index)
            pipe.expire(index, self.ttl_seconds)
            pipe.execute()
        return True

    def _get_batches(self, job_id):
        with self._unavailable_on_error():
            indexes = self._redis.smembers(self._batch_index_key(job_id))
            rows = []
            for idx in indexes:
                raw = self._redis.hgetall(self._batch_key(job_id, int(idx)))
                if raw:
                    rows.append(self._loads(raw))
        return rows

    def _get_tenant_jobs(self, tenant_id):
        with self._unavailable_on_error():
            job_ids = self._redis.smembers(self._tenant_index_key(tenant_id))
            rows = []
            for job_id in job_ids:
                raw = self._redis.hgetall(self._job_key(tenant_id, job_id))
                # index entries can outlive the job hash by a few seconds
                if raw:
                    rows.append(self._loads(raw))
        return rows
