"""Tests for the synchronizer, batch processor, queue and scheduler."""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest

from media_seo.config import ProcessingSettings
from media_seo.errors import (
    ConfigError,
    ErrorKind,
    InvalidTransition,
    PricingMissingError,
    ProcessingFailed,
    VendorHTTPError,
)
from media_seo.models import JobStatus
from media_seo.processing import (
    BatchProcessor,
    InMemoryScheduler,
    ProcessingSynchronizer,
    QueueManager,
    backoff_delay,
    decide_retry,
)
from media_seo.prompts import PromptBuilder
from media_seo.quality import QualityScorer
from media_seo.storage import AuditLogger, ParquetJobStore
from media_seo.utils import InMemoryRateLimiter


class Harness:
    """Synchronizer wired to in-memory stores and a mock provider."""

    def __init__(self, subject_store, clock, limits=None, **settings):
        self.clock = clock
        self.subject_store = subject_store
        self.job_store = ParquetJobStore()
        self.limiter = InMemoryRateLimiter(limits or {"minute": 100}, clock=clock)
        self.scheduler = InMemoryScheduler(clock=clock)
        self.settings = ProcessingSettings(**settings)
        self.provider = Mock()
        self.provider.name = "openai"
        self.provider.model = "gpt-4o"
        self.factory = Mock()
        self.factory.primary.return_value = self.provider
        self.factory.prompt_builder = PromptBuilder()
        self.sync = ProcessingSynchronizer(
            self.job_store,
            subject_store,
            self.factory,
            self.limiter,
            QualityScorer(),
            self.scheduler,
            settings=self.settings,
            audit=AuditLogger(),
            clock=clock,
        )


@pytest.fixture
def harness(subject_store, clock, good_metadata):
    h = Harness(subject_store, clock)
    h.provider.analyze.return_value = good_metadata
    return h


class TestRetryPolicy:
    """Test backoff and retry decisions."""

    def test_backoff_doubles_and_caps(self):
        assert [backoff_delay(n) for n in (1, 2, 3, 4)] == [5, 10, 20, 40]
        assert backoff_delay(7) == 300

    def test_retryable_kinds(self):
        decision = decide_retry(ErrorKind.VENDOR_HTTP, 0)
        assert decision.retry
        assert decision.retry_count == 1
        assert decision.delay == 5

        assert decide_retry(ErrorKind.RESPONSE_PARSE, 1).delay == 10

    def test_non_retryable_kinds(self):
        for kind in (ErrorKind.CONFIG, ErrorKind.PRICING_MISSING):
            decision = decide_retry(kind, 0)
            assert not decision.retry
            assert decision.retry_count == 0

    def test_retries_exhausted(self):
        decision = decide_retry(ErrorKind.VENDOR_HTTP, 3, max_retries=3)
        assert not decision.retry
        assert decision.retry_count == 4


class TestProcessingSynchronizer:
    """Test single-job processing."""

    def test_auto_approved(self, harness):
        result = harness.sync.process_single("1", "en")

        assert result.success
        assert result.status == JobStatus.APPROVED
        assert harness.subject_store.get_metadata("1")["alt"] == "Red barn beside a maple tree in autumn"

        job = harness.job_store.get(result.job_id)
        assert job.status == JobStatus.APPROVED
        assert job.approved_at is not None
        assert job.processed_at is not None
        assert job.total_cost == pytest.approx(0.0075)
        assert job.input_tokens == 1000
        assert job.prompt_version == "standard"
        # 0.5 * 0.92 + 0.3 * 1.0 + 0.2 * 0.4 (post title and categories present)
        assert job.score == pytest.approx(0.84)
        assert harness.limiter.current_count("openai", "minute") == 1
        assert harness.limiter.current_count("openai", "hour") == 1

    def test_low_score_saved_as_draft(self, harness, good_metadata):
        harness.subject_store.applied[("1", "en")] = {"alt": "Old alt text"}
        good_metadata.score = 0.6

        result = harness.sync.process_single("1", "en")

        assert result.success
        assert result.status == JobStatus.NEEDS_REVIEW
        assert harness.subject_store.get_metadata("1") == {"alt": "Old alt text"}
        assert harness.subject_store.get_draft("1")["title"] == "Red Barn in Vermont Autumn"
        assert harness.job_store.get(result.job_id).approved_at is None

    def test_hard_violation_saved_as_draft(self, harness, good_metadata):
        good_metadata.alt = "Photo of a red barn beside a maple tree"
        good_metadata.score = 0.99

        result = harness.sync.process_single("1", "en")

        assert result.status == JobStatus.NEEDS_REVIEW
        assert 'ALT text contains "photo of"' in result.errors

    def test_auto_apply_disabled(self, subject_store, clock, good_metadata):
        h = Harness(subject_store, clock, auto_apply=False)
        h.provider.analyze.return_value = good_metadata
        assert h.sync.process_single("1").status == JobStatus.NEEDS_REVIEW

    def test_cancelled_result_kept_as_draft(self, harness):
        cancel_event = Mock()
        cancel_event.is_set.return_value = True

        result = harness.sync.process_single("1", "en", cancel_event=cancel_event)

        assert result.status == JobStatus.NEEDS_REVIEW
        assert harness.subject_store.get_draft("1")
        assert not harness.subject_store.get_metadata("1")

    def test_rate_limited_is_rescheduled(self, subject_store, clock, good_metadata):
        h = Harness(subject_store, clock, limits={"minute": 1})
        h.provider.analyze.return_value = good_metadata
        h.limiter.record("openai")

        result = h.sync.process_single("1", "en")

        assert not result.success
        assert result.rate_limited
        assert result.status == JobStatus.PENDING
        assert result.rescheduled_at == 1061
        h.provider.analyze.assert_not_called()

        job = h.job_store.get(result.job_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 0
        assert [item.job_id for item in h.scheduler.pending()] == [job.job_id]

    def test_configured_hour_limit_reschedules(self, subject_store, clock, good_metadata):
        h = Harness(subject_store, clock, limits={"minute": 10, "hour": 1})
        h.provider.analyze.return_value = good_metadata

        assert h.sync.process_single("1", "en").status == JobStatus.APPROVED
        result = h.sync.process_single("2", "en")

        assert result.rate_limited
        assert result.rescheduled_at == 1000 + 3600 + 1
        assert h.provider.analyze.call_count == 1

    def test_concurrent_workers_share_the_limit(self, subject_store, clock, good_metadata):
        h = Harness(subject_store, clock, limits={"minute": 2})
        h.provider.analyze.return_value = good_metadata
        barrier = threading.Barrier(3)

        def run(subject_id):
            barrier.wait()
            return h.sync.process_single(subject_id, "en")

        with ThreadPoolExecutor(max_workers=3) as pool:
            results = list(pool.map(run, ["1", "2", "3"]))

        assert h.provider.analyze.call_count == 2
        assert sum(r.rate_limited for r in results) == 1
        assert h.limiter.current_count("openai") == 2

    def test_unexpected_provider_error_fails_job(self, harness):
        harness.provider.analyze.side_effect = TypeError("expected string or bytes-like object, got 'NoneType'")

        result = harness.sync.process_single("1", "en")

        assert result.status == JobStatus.FAILED
        assert result.errors[0].startswith("Analysis failed: expected string")
        job = harness.job_store.get(result.job_id)
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 0

        # The failed job does not block later attempts.
        again = harness.sync.process_single("1", "en")
        assert again.status != JobStatus.SKIPPED
        assert again.job_id != result.job_id

    def test_store_failure_after_analysis_fails_job(self, harness):
        harness.subject_store.apply_metadata = Mock(side_effect=OSError("disk full"))

        result = harness.sync.process_single("1", "en")

        assert not result.success
        assert result.status == JobStatus.FAILED
        assert result.errors == ["Could not record result: disk full"]
        job = harness.job_store.get(result.job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == "Could not record result: disk full"

    def test_audit_failure_after_status_recorded(self, harness):
        harness.sync.audit.analysis_completed = Mock(side_effect=OSError("disk full"))

        result = harness.sync.process_single("1", "en")

        assert not result.success
        assert result.status == JobStatus.APPROVED
        assert result.errors == ["Could not record result: disk full"]
        assert harness.job_store.get(result.job_id).status == JobStatus.APPROVED

    def test_transient_error_retried_with_backoff(self, harness):
        harness.provider.analyze.side_effect = VendorHTTPError("Service unavailable", "openai", 503)

        first = harness.sync.process_single("1", "en")
        assert first.status == JobStatus.PENDING
        assert first.rescheduled_at == 1005
        assert harness.job_store.get(first.job_id).retry_count == 1

        delays = []
        for _ in range(2):
            harness.clock.advance(300)
            start = harness.clock()
            result = harness.sync.process_single("1", "en", job_id=first.job_id)
            delays.append(result.rescheduled_at - start)
        assert delays == [10, 20]

        harness.clock.advance(300)
        final = harness.sync.process_single("1", "en", job_id=first.job_id)
        job = harness.job_store.get(first.job_id)
        assert final.status == JobStatus.FAILED
        assert job.status == JobStatus.FAILED
        assert job.retry_count == 4
        assert job.error_message == "Service unavailable"
        assert harness.provider.analyze.call_count == 4

    def test_config_error_fails_immediately(self, harness):
        harness.provider.analyze.side_effect = ConfigError("OpenAI API key is not configured")

        result = harness.sync.process_single("1", "en")

        assert result.status == JobStatus.FAILED
        assert harness.job_store.get(result.job_id).retry_count == 0
        assert not harness.scheduler.pending()

    def test_missing_pricing_fails(self, harness):
        harness.provider.analyze.side_effect = PricingMissingError("gpt-4o")

        result = harness.sync.process_single("1", "en")

        assert result.status == JobStatus.FAILED
        assert result.errors == ["Pricing not found for model: gpt-4o"]

    def test_unknown_subject(self, harness):
        result = harness.sync.process_single("404", "en")

        assert result.status == JobStatus.FAILED
        assert result.errors[0].startswith("Subject unavailable")
        harness.provider.analyze.assert_not_called()

    def test_no_provider(self, harness):
        harness.factory.primary.return_value = None

        result = harness.sync.process_single("1", "en")

        assert result.status == JobStatus.FAILED
        assert result.errors == ["No provider configured."]

    def test_concurrent_claim_skipped(self, harness):
        job, _ = harness.job_store.get_or_create_active("1", "en")
        assert harness.job_store.claim(job.job_id)

        result = harness.sync.process_single("1", "en")

        assert result.status == JobStatus.SKIPPED
        assert result.errors == ["Already processing"]
        harness.provider.analyze.assert_not_called()

    def test_unknown_job_id(self, harness):
        result = harness.sync.process_single("1", "en", job_id="missing")
        assert result.status == JobStatus.FAILED
        assert result.errors == ["Unknown job: missing"]

    def test_approve_draft(self, harness, good_metadata):
        good_metadata.score = 0.5
        result = harness.sync.process_single("1", "en")

        job = harness.sync.approve(result.job_id)

        assert job.status == JobStatus.APPROVED
        assert harness.subject_store.get_metadata("1")["alt"] == good_metadata.alt
        assert not harness.subject_store.get_draft("1")

    def test_reject_draft(self, harness, good_metadata):
        good_metadata.score = 0.5
        result = harness.sync.process_single("1", "en")

        job = harness.sync.reject(result.job_id, "Wrong subject")

        assert job.status == JobStatus.SKIPPED
        assert job.error_message == "Wrong subject"

    def test_failed_job_cannot_be_approved(self, harness):
        harness.provider.analyze.side_effect = ConfigError("bad")
        result = harness.sync.process_single("1", "en")

        with pytest.raises(InvalidTransition):
            harness.sync.approve(result.job_id)

    def test_review_unknown_job(self, harness):
        with pytest.raises(ProcessingFailed):
            harness.sync.approve("missing")
        with pytest.raises(ProcessingFailed):
            harness.sync.reject("missing")

    def test_new_job_after_terminal_state(self, harness):
        first = harness.sync.process_single("1", "en")
        second = harness.sync.process_single("1", "en")
        assert first.job_id != second.job_id
        assert len(harness.job_store.find(subject_id="1")) == 2


class TestBatchProcessor:
    """Test batch dispatch, early stop and cancellation."""

    def test_processes_all(self, harness):
        result = BatchProcessor(harness.sync, clock=harness.clock).process_batch(
            ["1", "2", "3", "2"], "en", max_workers=2
        )

        assert result.total == 3
        assert sorted(result.success) == ["1", "2", "3"]
        assert not result.failed
        assert all(j.batch_id == result.batch_id for j in harness.job_store.find())

    def test_skips_approved_unless_forced(self, harness):
        harness.sync.process_single("1", "en")
        processor = BatchProcessor(harness.sync, clock=harness.clock)

        result = processor.process_batch(["1", "2"], "en", max_workers=1)
        assert result.skipped == ["1"]
        assert result.success == ["2"]

        forced = processor.process_batch(["1"], "en", force=True, max_workers=1)
        assert forced.success == ["1"]

    def test_rate_limit_reschedules_remainder_as_group(self, subject_store, clock, good_metadata):
        h = Harness(subject_store, clock, limits={"minute": 2})
        h.provider.analyze.return_value = good_metadata

        result = BatchProcessor(h.sync, clock=clock).process_batch(["1", "2", "3"], "en", max_workers=1)

        assert result.success == ["1", "2"]
        assert result.rescheduled == ["3"]
        assert result.rate_limited
        pending = h.scheduler.pending()
        assert len(pending) == 1
        assert pending[0].group == result.batch_id
        # 61s until a slot frees plus the 5s buffer.
        assert pending[0].run_at == 1066
        job = h.job_store.get(pending[0].job_id)
        assert job.subject_id == "3"
        assert job.status == JobStatus.PENDING

    def test_cancellation(self, harness, good_metadata):
        processor = BatchProcessor(harness.sync, clock=harness.clock)

        def analyze_and_cancel(*args):
            processor.cancel()
            return good_metadata

        harness.provider.analyze.side_effect = analyze_and_cancel
        result = processor.process_batch(["1", "2", "3"], "en", max_workers=1)

        assert result.cancelled == ["2", "3"]
        assert harness.job_store.latest("1", "en").status == JobStatus.NEEDS_REVIEW
        assert harness.subject_store.get_draft("1")
        assert harness.job_store.latest("2", "en") is None

    def test_time_budget(self, subject_store, clock, good_metadata):
        h = Harness(subject_store, clock, time_budget=0)
        h.provider.analyze.return_value = good_metadata

        result = BatchProcessor(h.sync, clock=clock).process_batch(["1", "2"], "en")

        assert result.budget_exhausted
        assert result.rescheduled == ["1", "2"]
        assert [item.run_at for item in h.scheduler.pending()] == [1000, 1000]
        h.provider.analyze.assert_not_called()

    def test_no_provider(self, harness):
        harness.factory.primary.return_value = None

        result = BatchProcessor(harness.sync, clock=harness.clock).process_batch(["1", "2"], "en")

        assert result.failed == ["1", "2"]
        assert result.errors == ["No provider configured."]

    def test_worker_exception_counted_as_failure(self, harness):
        harness.sync.process_single = Mock(side_effect=RuntimeError("boom"))

        result = BatchProcessor(harness.sync, clock=harness.clock).process_batch(["1"], "en")

        assert result.failed == ["1"]


class TestQueueManager:
    """Test chunked scheduling and draining."""

    def test_enqueue_batch_in_chunks(self, subject_store, clock, tmp_path):
        h = Harness(subject_store, clock, limits={"minute": 60}, batch_size=2)
        queue = QueueManager(h.sync, data_dir=tmp_path, clock=clock)

        queued = queue.enqueue_batch(["1", "2", "3", "1"], "en")

        assert queued["total"] == 3
        assert queued["chunks"] == 2
        assert [item.run_at for item in h.scheduler.pending()] == [1000, 1000, 1002]
        assert (tmp_path / "batches.json").exists()
        saved = json.loads((tmp_path / "batches.json").read_text())
        assert saved[queued["batch_id"]]["total"] == 3

    def test_enqueue_skips_queued_and_approved(self, harness, tmp_path):
        queue = QueueManager(harness.sync, data_dir=tmp_path, clock=harness.clock)
        harness.sync.process_single("1", "en")
        assert queue.enqueue_single("2", "en") is not None
        assert queue.enqueue_single("2", "en") is None

        queued = queue.enqueue_batch(["1", "2", "3"], "en")

        assert queued["total"] == 1
        assert queue.enqueue_batch(["1"], "en", force=True)["total"] == 1

    def test_run_due(self, subject_store, clock, good_metadata, tmp_path):
        h = Harness(subject_store, clock, batch_size=2)
        h.provider.analyze.return_value = good_metadata
        queue = QueueManager(h.sync, data_dir=tmp_path, clock=clock)
        queued = queue.enqueue_batch(["1", "2", "3"], "en")

        assert len(queue.run_due()) == 2
        assert queue.get_batch_progress(queued["batch_id"])["completed"] == 2

        clock.advance(5)
        assert len(queue.run_due()) == 1
        progress = queue.get_batch_progress(queued["batch_id"])
        assert progress["completed"] == 3
        assert progress["percentage"] == 100

    def test_run_due_defers_rest_on_rate_limit(self, subject_store, clock, good_metadata, tmp_path):
        h = Harness(subject_store, clock, limits={"minute": 1})
        h.provider.analyze.return_value = good_metadata
        queue = QueueManager(h.sync, data_dir=tmp_path, clock=clock)
        queue.enqueue_batch(["1", "2", "3"], "en")

        results = queue.run_due()

        assert [r.status for r in results] == [JobStatus.APPROVED, JobStatus.PENDING]
        assert results[1].rate_limited
        assert [item.run_at for item in h.scheduler.pending()] == [1061, 1061]

    def test_cancel_batch(self, harness, tmp_path):
        queue = QueueManager(harness.sync, data_dir=tmp_path, clock=harness.clock)
        queued = queue.enqueue_batch(["1", "2"], "en")

        assert queue.cancel_batch(queued["batch_id"]) == 2
        assert not harness.scheduler.pending()
        assert all(j.status == JobStatus.SKIPPED for j in harness.job_store.find())
        assert queue.get_batch_progress(queued["batch_id"])["status"] == "cancelled"
        assert queue.cancel_batch("batch_unknown") == 0

    def test_batches_survive_restart(self, harness, tmp_path):
        queue = QueueManager(harness.sync, data_dir=tmp_path, clock=harness.clock)
        queued = queue.enqueue_batch(["1"], "en")

        reloaded = QueueManager(harness.sync, data_dir=tmp_path, clock=harness.clock)
        assert reloaded.get_batch_progress(queued["batch_id"])["found"]

    def test_status(self, harness, tmp_path):
        queue = QueueManager(harness.sync, data_dir=tmp_path, clock=harness.clock)
        queue.enqueue_batch(["1", "2"], "en")

        status = queue.get_status()

        assert status["pending"] == 2
        assert status["scheduled"] == 2
        assert "openai" in status["rate_limits"]


class TestInMemoryScheduler:
    """Test delayed execution ordering and persistence."""

    def test_due_in_time_order(self, clock):
        scheduler = InMemoryScheduler(clock=clock)
        scheduler.enqueue_at(1010, "b")
        scheduler.enqueue_at(1005, "a")
        scheduler.enqueue_at(2000, "c")

        assert [i.job_id for i in scheduler.due(1010)] == ["a", "b"]
        assert [i.job_id for i in scheduler.pending()] == ["c"]

    def test_ties_keep_insertion_order(self, clock):
        scheduler = InMemoryScheduler(clock=clock)
        for job_id in ("x", "y", "z"):
            scheduler.enqueue_at(1000, job_id)
        assert [i.job_id for i in scheduler.due(1000, limit=2)] == ["x", "y"]
        assert [i.job_id for i in scheduler.due(1000)] == ["z"]

    def test_reschedule_replaces_entry(self, clock):
        scheduler = InMemoryScheduler(clock=clock)
        scheduler.enqueue_at(1000, "a")
        scheduler.enqueue_at(1100, "a")

        assert scheduler.due(1050) == []
        assert [i.job_id for i in scheduler.due(1100)] == ["a"]

    def test_cancel(self, clock):
        scheduler = InMemoryScheduler(clock=clock)
        scheduler.enqueue_at(1000, "a", group="g1")
        scheduler.enqueue_at(1000, "b", group="g1")
        scheduler.enqueue_at(1000, "c", group="g2")

        assert scheduler.cancel("c")
        assert not scheduler.cancel("c")
        assert scheduler.cancel_group("g1") == 2
        assert scheduler.due(5000) == []

    def test_checkpoint_restore(self, clock, tmp_path):
        checkpoint = tmp_path / "schedule.json"
        scheduler = InMemoryScheduler(checkpoint_file=checkpoint, clock=clock)
        scheduler.enqueue_at(1500, "a", group="batch_1")
        scheduler.enqueue_at(1200, "b")

        restored = InMemoryScheduler(checkpoint_file=checkpoint, clock=clock)

        assert [(i.job_id, i.run_at, i.group) for i in restored.pending()] == [
            ("b", 1200, None),
            ("a", 1500, "batch_1"),
        ]
