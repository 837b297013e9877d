"""
Batch quality assessment.

Assesses many images against the vision capability with:
- Bounded concurrency (thread pool)
- A token-bucket rate limiter shared by all workers
- Per-item retries with exponential backoff on TransientExternalError
- Cooperative cancellation: once a job is cancelled no new item starts,
  items already in flight finish normally

One item failing never aborts the batch; it is recorded as failed and the
rest carry on. Jobs live in a TTLArena registry so finished jobs expire.
"""

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging

from ..config import BatchConfig
from ..core.arena import TTLArena
from ..core.models import QualityAssessment, utcnow
from ..exceptions import AvesError, TransientExternalError, ValidationError
from .vision import ImageRef

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Thread-safe token bucket.

    Holds up to `capacity` tokens and refills at `rate` tokens per second.

    Example:
        bucket = TokenBucket(rate=500 / 60, capacity=50)
        if bucket.acquire(timeout=5):
            call_vision_api()
    """

    def __init__(
        self,
        rate: float,
        capacity: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    @property
    def available(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def try_acquire(self, tokens: float = 1.0) -> bool:
        """Take tokens if available right now."""
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def acquire(
        self,
        tokens: float = 1.0,
        timeout: Optional[float] = None,
        cancelled: Optional[threading.Event] = None,
    ) -> bool:
        """
        Block until tokens are available.

        Returns:
            False if the timeout passed or the cancel event was set first
        """
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            if cancelled is not None and cancelled.is_set():
                return False
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return True
                wait = (tokens - self._tokens) / self.rate
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            self._sleep(min(wait, 0.25))


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ItemStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class BatchItemResult:
    image_id: str
    status: ItemStatus
    attempts: int = 0
    assessment: Optional[QualityAssessment] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image_id": self.image_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "assessment": self.assessment.to_dict() if self.assessment else None,
            "error": self.error,
        }


@dataclass
class BatchJob:
    """A batch of images being assessed."""
    job_id: str
    items: List[ImageRef]
    status: JobStatus = JobStatus.PENDING
    results: Dict[str, BatchItemResult] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    _cancel: threading.Event = field(default_factory=threading.Event, repr=False)
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job finishes. Returns False on timeout."""
        return self._done.wait(timeout)

    def count(self, status: ItemStatus) -> int:
        return sum(1 for r in list(self.results.values()) if r.status == status)

    @property
    def progress(self) -> Dict[str, int]:
        return {
            "total": len(self.items),
            "processed": len(self.results),
            "successful": self.count(ItemStatus.SUCCESS),
            "failed": self.count(ItemStatus.FAILED),
            "skipped": self.count(ItemStatus.SKIPPED),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "results": [r.to_dict() for r in list(self.results.values())],
        }


class BatchAssessor:
    """
    Run batch assessment jobs.

    Example:
        assessor = BatchAssessor(engine.assess_quality)
        job = assessor.start([ImageRef("img-1", url=...), ...])
        job.wait()
        job.progress     # {"total": 2, "successful": 2, ...}
    """

    def __init__(
        self,
        assess: Callable[[ImageRef], QualityAssessment],
        config: Optional[BatchConfig] = None,
        registry: Optional[TTLArena] = None,
        limiter: Optional[TokenBucket] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            assess: Assesses one image, raising TransientExternalError on
                retryable failures
            config: Concurrency, rate limit and retry settings
            registry: Job store (defaults to a TTLArena sized from config)
            limiter: Rate limiter (defaults to a TokenBucket from config)
            sleep: Backoff sleep, injectable for tests
        """
        self.assess = assess
        self.config = config or BatchConfig()
        self.registry = registry if registry is not None else TTLArena(
            max_entries=self.config.max_jobs,
            default_ttl=self.config.job_ttl_seconds,
        )
        self.limiter = limiter or TokenBucket(
            rate=self.config.requests_per_minute / 60.0,
            capacity=self.config.burst_size,
        )
        self._sleep = sleep

    def submit(self, items: Sequence[ImageRef], job_id: Optional[str] = None) -> BatchJob:
        """Register a job without starting it."""
        if not items:
            raise ValidationError("A batch needs at least one image")
        ids = [item.image_id for item in items]
        if len(set(ids)) != len(ids):
            raise ValidationError("Batch image ids must be unique")
        job = BatchJob(job_id=job_id or str(uuid.uuid4()), items=list(items))
        self.registry.put(job.job_id, job)
        logger.info(f"Batch job {job.job_id} registered with {len(job.items)} items")
        return job

    def start(self, items: Sequence[ImageRef], job_id: Optional[str] = None) -> BatchJob:
        """Register a job and run it on a background thread."""
        job = self.submit(items, job_id)
        thread = threading.Thread(
            target=self.run,
            args=(job,),
            name=f"batch-{job.job_id[:8]}",
            daemon=True,
        )
        thread.start()
        return job

    def get(self, job_id: str) -> Optional[BatchJob]:
        entry = self.registry.get(job_id)
        return entry.value if entry else None

    def cancel(self, job_id: str) -> bool:
        """Stop starting new items. Returns False if unknown or already finished."""
        job = self.get(job_id)
        if job is None or job.finished:
            return False
        job._cancel.set()
        logger.info(f"Batch job {job_id} cancelled")
        return True

    def run(self, job: BatchJob) -> BatchJob:
        """Process every item of a job, blocking until done."""
        job.status = JobStatus.PROCESSING
        job.started_at = utcnow()
        logger.info(f"Batch job {job.job_id} started ({len(job.items)} items)")

        try:
            with ThreadPoolExecutor(max_workers=max(1, self.config.concurrency)) as pool:
                futures = [pool.submit(self._run_item, job, item) for item in job.items]
                for future in futures:
                    future.result()
        finally:
            job.completed_at = utcnow()
            progress = job.progress
            if job.cancelled:
                job.status = JobStatus.CANCELLED
            elif progress["total"] and progress["failed"] == progress["total"]:
                job.status = JobStatus.FAILED
            else:
                job.status = JobStatus.COMPLETED
            job._done.set()

        logger.info(
            f"Batch job {job.job_id} {job.status.value}: "
            f"{progress['successful']} ok, {progress['failed']} failed, "
            f"{progress['skipped']} skipped"
        )
        return job

    def _run_item(self, job: BatchJob, item: ImageRef) -> None:
        result = self._process_item(job, item)
        job.results[result.image_id] = result

    def _process_item(self, job: BatchJob, item: ImageRef) -> BatchItemResult:
        if job.cancelled:
            return BatchItemResult(item.image_id, ItemStatus.SKIPPED, error="job cancelled")

        last_error = None
        attempts = 0
        for attempt in range(1, self.config.max_attempts + 1):
            if not self.limiter.acquire(
                timeout=self.config.item_timeout_seconds,
                cancelled=job._cancel,
            ):
                if job.cancelled:
                    return BatchItemResult(
                        item.image_id, ItemStatus.SKIPPED, attempts, error="job cancelled"
                    )
                last_error = "rate limit wait timed out"
                break

            attempts = attempt
            try:
                assessment = self.assess(item)
                return BatchItemResult(item.image_id, ItemStatus.SUCCESS, attempts, assessment)
            except TransientExternalError as e:
                last_error = str(e)
                if attempt < self.config.max_attempts:
                    delay = self.config.backoff_base_seconds * (2 ** (attempt - 1))
                    logger.warning(
                        f"Vision assessment failed for {item.image_id} "
                        f"(attempt {attempt}/{self.config.max_attempts}), retrying in {delay:.1f}s: {e}"
                    )
                    self._sleep(delay)
            except AvesError as e:
                last_error = str(e)
                break
            except Exception as e:
                logger.exception(f"Unexpected error assessing {item.image_id}")
                last_error = f"{type(e).__name__}: {e}"
                break

        logger.warning(f"Skipping {item.image_id} after {attempts} attempt(s): {last_error}")
        return BatchItemResult(item.image_id, ItemStatus.FAILED, attempts, error=last_error)
