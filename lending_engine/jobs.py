"""
Payment Queue Module

Durable job queue decoupling webhook receipt from payment processing.
Jobs are claimed atomically (lowest priority value first, then earliest
scheduled time), retried with exponential backoff on transient failures,
and moved to "dead" once their attempts are exhausted. A recovery sweep
returns jobs whose worker disappeared mid-flight.
"""

import logging
import uuid
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum

from .audit import AuditTrail, AuditEventType
from .storage import StorageInterface, StorageRecord, parse_datetime

logger = logging.getLogger("lending_engine.jobs")


class JobType(Enum):
    PAYMENT_ALLOCATION = "payment_allocation"


class JobStatus(Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)


@dataclass
class PaymentJob(StorageRecord):
    tenant_id: Optional[str]
    job_type: JobType
    payload: Dict[str, Any]
    priority: int = 5
    status: JobStatus = JobStatus.QUEUED
    attempts: int = 0
    max_attempts: int = 3
    scheduled_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    dedup_key: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentJob':
        data = dict(data)
        for key in ('created_at', 'updated_at', 'scheduled_at', 'claimed_at', 'completed_at'):
            data[key] = parse_datetime(data.get(key))
        data['job_type'] = JobType(data['job_type'])
        data['status'] = JobStatus(data['status'])
        return cls(**data)


class PaymentQueue:
    """
    Job queue backed by the storage layer
    """

    TABLE = "payment_jobs"

    def __init__(self, storage: StorageInterface, audit_trail: Optional[AuditTrail] = None,
                 max_attempts: int = 3, retry_backoff_seconds: int = 30,
                 stuck_job_minutes: int = 5):
        self.storage = storage
        self.audit_trail = audit_trail
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.stuck_job_minutes = stuck_job_minutes

    def _save(self, job: PaymentJob) -> None:
        job.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.TABLE, job.id, job.to_dict())

    def enqueue(self, tenant_id: Optional[str], job_type: JobType, payload: Dict[str, Any],
                priority: int = 5, dedup_key: Optional[str] = None,
                max_attempts: Optional[int] = None) -> PaymentJob:
        """
        Enqueue a job with status "queued"

        Args:
            tenant_id: Tenant the job runs for
            job_type: Kind of work
            payload: JSON-serializable job input
            priority: Lower runs first
            dedup_key: When set, an active job with the same key is returned
                instead of enqueueing a second one
            max_attempts: Override of the queue default

        Returns:
            The queued (or already active) job
        """
        with self.storage.atomic():
            if dedup_key:
                for data in self.storage.find(self.TABLE, {'dedup_key': dedup_key}):
                    existing = PaymentJob.from_dict(data)
                    if existing.status in ACTIVE_STATUSES:
                        return existing

            now = datetime.now(timezone.utc)
            job = PaymentJob(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                tenant_id=tenant_id,
                job_type=job_type,
                payload=payload,
                priority=priority,
                max_attempts=max_attempts or self.max_attempts,
                scheduled_at=now,
                dedup_key=dedup_key
            )
            self.storage.insert(self.TABLE, job.id, job.to_dict())

        logger.info(f"Job enqueued: {job.job_type.value}",
                    extra={'job_id': job.id, 'tenant_id': tenant_id, 'action': 'enqueue'})
        return job

    def claim(self, worker_id: str, job_types: Optional[Iterable[JobType]] = None,
              now: Optional[datetime] = None) -> Optional[PaymentJob]:
        """
        Atomically claim the next runnable job

        Returns:
            The claimed job (status "processing", attempts incremented) or
            None when nothing is runnable
        """
        now = now or datetime.now(timezone.utc)
        wanted = {t.value for t in job_types} if job_types else None

        with self.storage.atomic():
            candidates = []
            for data in self.storage.find(self.TABLE, {'status': JobStatus.QUEUED.value}):
                if wanted is not None and data['job_type'] not in wanted:
                    continue
                job = PaymentJob.from_dict(data)
                if job.scheduled_at and job.scheduled_at > now:
                    continue
                candidates.append(job)

            candidates.sort(key=lambda j: (j.priority, j.scheduled_at or j.created_at, j.created_at))
            for job in candidates:
                claimed = self.storage.update_where(
                    self.TABLE, job.id,
                    {'status': JobStatus.QUEUED.value, 'attempts': job.attempts},
                    {
                        'status': JobStatus.PROCESSING.value,
                        'attempts': job.attempts + 1,
                        'claimed_at': now.isoformat(),
                        'claimed_by': worker_id,
                        'updated_at': now.isoformat()
                    }
                )
                if claimed:
                    return PaymentJob.from_dict(claimed)
        return None

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> PaymentJob:
        job = self._require(job_id)
        job.status = JobStatus.COMPLETED
        job.completed_at = datetime.now(timezone.utc)
        job.result = result or {}
        job.claimed_by = None
        self._save(job)
        return job

    def fail(self, job_id: str, error: str, retryable: bool,
             error_code: Optional[str] = None, now: Optional[datetime] = None) -> PaymentJob:
        """
        Record a failed attempt

        Retryable failures go back to "queued" with exponential backoff until
        attempts are exhausted, then "dead". Non-retryable failures are
        "failed" immediately.
        """
        now = now or datetime.now(timezone.utc)
        with self.storage.atomic():
            job = self._require(job_id)
            job.last_error = error
            job.error_code = error_code
            job.claimed_at = None
            job.claimed_by = None

            if not retryable:
                job.status = JobStatus.FAILED
            elif job.attempts_exhausted:
                job.status = JobStatus.DEAD
            else:
                job.status = JobStatus.QUEUED
                delay = self.retry_backoff_seconds * (2 ** max(job.attempts - 1, 0))
                job.scheduled_at = now + timedelta(seconds=delay)

            self._save(job)
            if job.status == JobStatus.DEAD and self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.JOB_DEAD,
                    entity_type="job",
                    entity_id=job.id,
                    metadata={"attempts": job.attempts, "error": error, "error_code": error_code},
                    tenant_id=job.tenant_id
                )

        log_level = logging.ERROR if job.status == JobStatus.DEAD else logging.WARNING
        logger.log(log_level, f"Job attempt {job.attempts} failed, now {job.status.value}: {error}",
                   extra={'job_id': job.id, 'tenant_id': job.tenant_id, 'action': 'fail'})
        return job

    def recover_stuck(self, timeout_minutes: Optional[int] = None,
                      now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Return jobs stuck in "processing" past the timeout to the queue, or
        to "dead" when their attempts are exhausted.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=timeout_minutes or self.stuck_job_minutes)
        results = {'requeued': 0, 'dead': 0}

        with self.storage.atomic():
            for data in self.storage.find(self.TABLE, {'status': JobStatus.PROCESSING.value}):
                job = PaymentJob.from_dict(data)
                if job.claimed_at is None or job.claimed_at > cutoff:
                    continue

                job.last_error = f"Claim by {job.claimed_by} timed out"
                job.claimed_at = None
                job.claimed_by = None
                if job.attempts_exhausted:
                    job.status = JobStatus.DEAD
                    results['dead'] += 1
                else:
                    job.status = JobStatus.QUEUED
                    job.scheduled_at = now
                    results['requeued'] += 1
                self._save(job)

            if (results['requeued'] or results['dead']) and self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.JOBS_RECOVERED,
                    entity_type="queue",
                    entity_id=self.TABLE,
                    metadata=results
                )

        if results['requeued'] or results['dead']:
            logger.warning(f"Recovered stuck jobs: {results}", extra={'action': 'recover_stuck'})
        return results

    def _require(self, job_id: str) -> PaymentJob:
        job = self.get_job(job_id)
        if job is None:
            raise ValueError(f"Job {job_id} not found")
        return job

    def get_job(self, job_id: str) -> Optional[PaymentJob]:
        data = self.storage.load(self.TABLE, job_id)
        return PaymentJob.from_dict(data) if data else None

    def list_jobs(self, status: Optional[JobStatus] = None,
                  tenant_id: Optional[str] = None) -> List[PaymentJob]:
        filters = {}
        if status is not None:
            filters['status'] = status.value
        if tenant_id is not None:
            filters['tenant_id'] = tenant_id
        jobs = [PaymentJob.from_dict(d) for d in self.storage.find(self.TABLE, filters)]
        jobs.sort(key=lambda j: j.created_at)
        return jobs

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for data in self.storage.load_all(self.TABLE):
            counts[data['status']] += 1
        return counts
