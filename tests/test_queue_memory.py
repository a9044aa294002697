"""Tests for the in-process dispatch queue: dedup, retry/backoff, retention."""

from __future__ import annotations

from datetime import timedelta

import pytest
from freezegun import freeze_time

from dealhook.queue.jobs import JobOptions, JobState, backoff_delay
from dealhook.queue.memory import InMemoryDispatchQueue

OPTS = JobOptions(attempts=3, backoff_delay=5.0, keep_completed=2, keep_failed=2)


@pytest.fixture
def q():
    queue = InMemoryDispatchQueue("test-queue", lease_seconds=60)
    yield queue
    queue.close()


# ── Coalescing ────────────────────────────────────────────────────────────


class TestCoalescing:
    def test_same_id_enqueued_once(self, q):
        first = q.enqueue("created:D-1:Qualified", {"n": 1}, OPTS)
        second = q.enqueue("created:D-1:Qualified", {"n": 2}, OPTS)

        assert first.created is True
        assert second.created is False
        assert second.state == JobState.WAITING
        assert q.counts().waiting == 1
        # The first submission's data wins
        assert q.get_job("created:D-1:Qualified").data == {"n": 1}

    def test_coalesces_while_active(self, q):
        q.enqueue("k", {}, OPTS)
        job = q.fetch()
        handle = q.enqueue("k", {}, OPTS)

        assert job is not None
        assert handle.created is False
        assert handle.state == JobState.ACTIVE
        assert q.counts().pending == 1

    def test_coalesces_against_retained_completed(self, q):
        q.enqueue("k", {}, OPTS)
        q.complete(q.fetch())
        handle = q.enqueue("k", {}, OPTS)

        assert handle.created is False
        assert handle.state == JobState.COMPLETED
        assert q.counts().waiting == 0

    def test_distinct_ids_are_independent(self, q):
        q.enqueue("created:D-1:Qualified", {}, OPTS)
        q.enqueue("updated:D-1:Committed", {}, OPTS)

        assert q.counts().waiting == 2
        ids = {q.fetch().id, q.fetch().id}
        assert ids == {"created:D-1:Qualified", "updated:D-1:Committed"}

    def test_fifo_order(self, q):
        for i in range(3):
            q.enqueue(f"job-{i}", {}, OPTS)
        assert [q.fetch().id for _ in range(3)] == ["job-0", "job-1", "job-2"]

    def test_enqueue_copies_data(self, q):
        data = {"nested": {"a": 1}}
        q.enqueue("k", data, OPTS)
        data["nested"]["a"] = 2
        assert q.fetch().data == {"nested": {"a": 1}}


# ── Fetch / complete ──────────────────────────────────────────────────────


class TestFetchComplete:
    def test_fetch_empty_returns_none(self, q):
        assert q.fetch(timeout=0) is None

    def test_fetch_with_timeout_returns_none_when_idle(self, q):
        assert q.fetch(timeout=0.05) is None

    def test_fetch_marks_active(self, q):
        q.enqueue("k", {"x": 1}, OPTS)
        job = q.fetch()

        assert job.state == JobState.ACTIVE
        assert job.processed_at is not None
        counts = q.counts()
        assert counts.waiting == 0
        assert counts.active == 1

    def test_complete_records_result(self, q):
        q.enqueue("k", {}, OPTS)
        q.complete(q.fetch(), {"ok": True})

        stored = q.get_job("k")
        assert stored.state == JobState.COMPLETED
        assert stored.result == {"ok": True}
        assert stored.finished_at is not None
        assert q.counts().as_dict() == {
            "waiting": 0,
            "active": 0,
            "delayed": 0,
            "completed": 1,
            "failed": 0,
        }

    def test_complete_unknown_lease_is_ignored(self, q):
        q.enqueue("k", {}, OPTS)
        job = q.fetch()
        q.complete(job)
        # Second completion of the same lease does nothing
        q.complete(job)
        assert q.counts().completed == 1

    def test_closed_queue_ping_false(self, q):
        assert q.ping() is True
        q.close()
        assert q.ping() is False


# ── Retry and dead-letter ─────────────────────────────────────────────────


class TestRetry:
    def test_backoff_is_exponential(self):
        opts = JobOptions(attempts=5, backoff_delay=5.0)
        assert [backoff_delay(opts, n) for n in range(1, 5)] == [5.0, 10.0, 20.0, 40.0]

    def test_options_validated(self):
        with pytest.raises(ValueError):
            JobOptions(attempts=0)
        with pytest.raises(ValueError):
            JobOptions(backoff_delay=-1)

    def test_retry_then_dead_letter(self, q):
        delays = []
        with freeze_time("2026-03-01 12:00:00") as frozen:
            q.enqueue("k", {}, OPTS)

            for attempt in range(1, OPTS.attempts + 1):
                job = q.fetch()
                assert job is not None, f"attempt {attempt} not ready"
                assert job.attempts_made == attempt - 1
                outcome = q.fail(job, RuntimeError("boom"))
                assert outcome.attempts_made == attempt

                if outcome.dead_lettered:
                    break
                delays.append(outcome.retry_delay)
                assert q.counts().delayed == 1
                # Not ready until the backoff has elapsed
                assert q.fetch() is None
                frozen.tick(timedelta(seconds=outcome.retry_delay))

        assert outcome.dead_lettered is True
        assert outcome.attempts_made == OPTS.attempts
        assert delays == [5.0, 10.0]
        assert all(a < b for a, b in zip(delays, delays[1:]))

        stored = q.get_job("k")
        assert stored.state == JobState.FAILED
        assert stored.failed_reason == "RuntimeError: boom"
        assert q.counts().failed == 1
        assert q.counts().pending == 0

    def test_delayed_job_still_coalesces(self, q):
        q.enqueue("k", {}, OPTS)
        q.fail(q.fetch(), RuntimeError("boom"))
        handle = q.enqueue("k", {}, OPTS)

        assert handle.created is False
        assert handle.state == JobState.DELAYED

    def test_single_attempt_dead_letters_immediately(self, q):
        q.enqueue("k", {}, JobOptions(attempts=1))
        outcome = q.fail(q.fetch(), ValueError("bad"))
        assert outcome.dead_lettered is True
        assert outcome.retry_delay is None


# ── Retention ─────────────────────────────────────────────────────────────


class TestRetention:
    def test_completed_history_is_bounded(self, q):
        for i in range(4):
            q.enqueue(f"job-{i}", {}, OPTS)
            q.complete(q.fetch())

        assert q.counts().completed == OPTS.keep_completed
        assert q.get_job("job-0") is None
        assert q.get_job("job-1") is None
        assert q.get_job("job-3") is not None

    def test_evicted_id_can_be_resubmitted(self, q):
        for i in range(3):
            q.enqueue(f"job-{i}", {}, OPTS)
            q.complete(q.fetch())

        handle = q.enqueue("job-0", {}, OPTS)
        assert handle.created is True
        assert q.counts().waiting == 1

    def test_failed_history_is_bounded(self, q):
        opts = JobOptions(attempts=1, keep_failed=1)
        for i in range(3):
            q.enqueue(f"job-{i}", {}, opts)
            q.fail(q.fetch(), RuntimeError("x"))

        assert q.counts().failed == 1
        assert q.get_job("job-2").state == JobState.FAILED


# ── Stalled recovery ──────────────────────────────────────────────────────


class TestStalledRecovery:
    def test_expired_lease_is_requeued(self, q):
        with freeze_time("2026-03-01 12:00:00") as frozen:
            q.enqueue("k", {}, OPTS)
            job = q.fetch()
            assert q.recover_stalled() == 0

            frozen.tick(timedelta(seconds=61))
            assert q.recover_stalled() == 1

        assert q.counts().waiting == 1
        assert q.counts().active == 0
        # The old lease can no longer complete the job
        q.complete(job)
        assert q.counts().completed == 0
        again = q.fetch()
        assert again.id == "k"
