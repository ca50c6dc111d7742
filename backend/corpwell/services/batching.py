import secrets
import time
from dataclasses import dataclass
from typing import Optional, Sequence, TypeVar

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 1000


def new_job_id(tenant_id, now_ms: Optional[int] = None) -> str:
    """Job ids are unique per tenant and time: tenant, epoch millis, random suffix."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"onboarding_{tenant_id}_{stamp}_{secrets.token_hex(4)}"


def batch_id(job_id: str, batch_index: int) -> str:
    return f"{job_id}:{batch_index}"


def create_batches(items: Sequence[T], batch_size: int = DEFAULT_BATCH_SIZE) -> list[list[T]]:
    """Contiguous, order-preserving slices of at most batch_size items."""
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


@dataclass
class BatchPlan:
    job_id: str
    batches: list

    @property
    def total_batches(self) -> int:
        return len(self.batches)

    @property
    def batch_ids(self) -> list[str]:
        return [batch_id(self.job_id, i) for i in range(len(self.batches))]


def plan_batches(items: Sequence[T], tenant_id, batch_size: int = DEFAULT_BATCH_SIZE,
                 job_id: Optional[str] = None) -> BatchPlan:
    return BatchPlan(job_id=job_id or new_job_id(tenant_id), batches=create_batches(items, batch_size))
