"""
Test suite for the payment job queue

Tests claim ordering, retry with exponential backoff, dead-lettering and
recovery of jobs whose worker vanished.
"""

import pytest
from datetime import datetime, timedelta, timezone

from lending_engine.audit import AuditTrail, AuditEventType
from lending_engine.jobs import JobStatus, JobType, PaymentQueue
from lending_engine.storage import InMemoryStorage


class TestPaymentQueue:
    """Test PaymentQueue functionality"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.queue = PaymentQueue(self.storage, self.audit_trail, max_attempts=3,
                                  retry_backoff_seconds=30, stuck_job_minutes=5)
        self.t0 = datetime.now(timezone.utc) + timedelta(seconds=1)

    def enqueue(self, event_id="evt-1", **kwargs):
        return self.queue.enqueue("t1", JobType.PAYMENT_ALLOCATION, {"event_id": event_id}, **kwargs)

    def test_enqueue(self):
        job = self.enqueue()
        stored = self.queue.get_job(job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.attempts == 0
        assert stored.max_attempts == 3
        assert stored.payload == {"event_id": "evt-1"}

    def test_dedup_key_returns_active_job(self):
        first = self.enqueue(dedup_key="payment_allocation:evt-1")
        second = self.enqueue(dedup_key="payment_allocation:evt-1")
        assert second.id == first.id
        assert len(self.queue.list_jobs()) == 1

    def test_dedup_key_ignores_finished_jobs(self):
        first = self.enqueue(dedup_key="payment_allocation:evt-1")
        self.queue.claim("w1", now=self.t0)
        self.queue.complete(first.id)

        second = self.enqueue(dedup_key="payment_allocation:evt-1")
        assert second.id != first.id

    def test_claim_lowest_priority_value_first(self):
        self.enqueue("evt-low", priority=5)
        urgent = self.enqueue("evt-urgent", priority=1)

        claimed = self.queue.claim("worker-1", now=self.t0)
        assert claimed.id == urgent.id
        assert claimed.status == JobStatus.PROCESSING
        assert claimed.attempts == 1
        assert claimed.claimed_by == "worker-1"

    def test_claim_is_exclusive(self):
        self.enqueue()
        assert self.queue.claim("worker-1", now=self.t0) is not None
        assert self.queue.claim("worker-2", now=self.t0) is None

    def test_claim_filters_job_types(self):
        job = self.enqueue()
        claimed = self.queue.claim("worker-1", job_types=[JobType.PAYMENT_ALLOCATION], now=self.t0)
        assert claimed.id == job.id

    def test_retry_backoff_then_dead(self):
        """Retryable failures back off 30s, 60s, then dead-letter"""
        job = self.enqueue()

        self.queue.claim("w1", now=self.t0)
        failed = self.queue.fail(job.id, "database is locked", retryable=True,
                                 error_code="TRANSIENT_FAILURE", now=self.t0)
        assert failed.status == JobStatus.QUEUED
        assert failed.scheduled_at == self.t0 + timedelta(seconds=30)
        assert failed.error_code == "TRANSIENT_FAILURE"

        assert self.queue.claim("w1", now=self.t0 + timedelta(seconds=10)) is None
        second_try = self.t0 + timedelta(seconds=31)
        assert self.queue.claim("w1", now=second_try).attempts == 2

        failed = self.queue.fail(job.id, "database is locked", retryable=True, now=second_try)
        assert failed.scheduled_at == second_try + timedelta(seconds=60)

        third_try = second_try + timedelta(seconds=61)
        assert self.queue.claim("w1", now=third_try).attempts == 3
        dead = self.queue.fail(job.id, "database is locked", retryable=True, now=third_try)

        assert dead.status == JobStatus.DEAD
        assert self.queue.claim("w1", now=third_try + timedelta(hours=1)) is None
        dead_events = self.audit_trail.get_events_by_type(AuditEventType.JOB_DEAD)
        assert [e.entity_id for e in dead_events] == [job.id]

    def test_non_retryable_failure(self):
        job = self.enqueue()
        self.queue.claim("w1", now=self.t0)
        failed = self.queue.fail(job.id, "Customer has no loans", retryable=False,
                                 error_code="ALLOCATION_FAILED")
        assert failed.status == JobStatus.FAILED
        assert failed.claimed_by is None
        assert self.queue.claim("w1", now=self.t0 + timedelta(hours=1)) is None

    def test_complete(self):
        job = self.enqueue()
        self.queue.claim("w1", now=self.t0)
        done = self.queue.complete(job.id, {"outcome": "applied"})
        assert done.status == JobStatus.COMPLETED
        assert done.completed_at is not None
        assert self.queue.get_job(job.id).result == {"outcome": "applied"}

    def test_unknown_job(self):
        with pytest.raises(ValueError, match="Job missing not found"):
            self.queue.complete("missing")

    def test_recover_stuck(self):
        """Jobs claimed longer ago than the timeout go back to the queue"""
        stuck = self.enqueue("evt-1")
        self.queue.claim("w1", now=self.t0)
        fresh = self.enqueue("evt-2")
        self.queue.claim("w2", now=self.t0 + timedelta(minutes=5, seconds=30))

        results = self.queue.recover_stuck(now=self.t0 + timedelta(minutes=6))

        assert results == {'requeued': 1, 'dead': 0}
        assert self.queue.get_job(stuck.id).status == JobStatus.QUEUED
        assert self.queue.get_job(stuck.id).claimed_by is None
        assert self.queue.get_job(fresh.id).status == JobStatus.PROCESSING
        assert len(self.audit_trail.get_events_by_type(AuditEventType.JOBS_RECOVERED)) == 1

    def test_recover_exhausted_job_is_dead(self):
        job = self.enqueue(max_attempts=1)
        self.queue.claim("w1", now=self.t0)

        results = self.queue.recover_stuck(timeout_minutes=1, now=self.t0 + timedelta(minutes=2))
        assert results == {'requeued': 0, 'dead': 1}
        assert self.queue.get_job(job.id).status == JobStatus.DEAD

    def test_counts_and_listing(self):
        self.enqueue("evt-1")
        self.queue.enqueue("t2", JobType.PAYMENT_ALLOCATION, {"event_id": "evt-2"})
        self.queue.claim("w1", now=self.t0)

        counts = self.queue.counts()
        assert counts["queued"] == 1
        assert counts["processing"] == 1
        assert counts["dead"] == 0
        assert len(self.queue.list_jobs(tenant_id="t2")) == 1
        assert len(self.queue.list_jobs(status=JobStatus.PROCESSING)) == 1
