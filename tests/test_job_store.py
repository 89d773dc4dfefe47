"""Tests for job persistence."""

import pytest

from media_seo.errors import InvalidTransition
from media_seo.models import JobStatus, ProcessingJob
from media_seo.storage import ParquetJobStore


@pytest.fixture
def store():
    return ParquetJobStore()


class TestJobLifecycle:
    """Test creation, claiming and transitions."""

    def test_create_and_get(self, store):
        job = store.create(ProcessingJob(job_id="j1", subject_id="42"))
        assert store.get("j1") is job
        assert job.status == JobStatus.PENDING
        assert job.created_at is not None

    def test_duplicate_job_id_rejected(self, store):
        store.create(ProcessingJob(job_id="j1", subject_id="42"))
        with pytest.raises(ValueError):
            store.create(ProcessingJob(job_id="j1", subject_id="43"))

    def test_claim_only_once(self, store):
        store.create(ProcessingJob(job_id="j1", subject_id="42"))
        assert store.claim("j1")
        assert not store.claim("j1")
        assert store.get("j1").status == JobStatus.PROCESSING

    def test_claim_unknown_job(self, store):
        with pytest.raises(KeyError):
            store.claim("missing")

    def test_invalid_transition(self, store):
        store.create(ProcessingJob(job_id="j1", subject_id="42"))
        with pytest.raises(InvalidTransition):
            store.update_status("j1", JobStatus.APPROVED)

    def test_approval_sets_timestamp(self, store):
        store.create(ProcessingJob(job_id="j1", subject_id="42"))
        store.claim("j1")
        job = store.update_status("j1", JobStatus.APPROVED, score=0.9)
        assert job.approved_at is not None
        assert job.score == 0.9

    def test_unknown_field_rejected(self, store):
        store.create(ProcessingJob(job_id="j1", subject_id="42"))
        with pytest.raises(AttributeError):
            store.update_fields("j1", colour="red")


class TestJobQueries:
    """Test lookup helpers."""

    def test_get_or_create_active_reuses_open_job(self, store):
        first, created = store.get_or_create_active("42", "en", "batch_1")
        second, created_again = store.get_or_create_active("42", "en")

        assert created
        assert not created_again
        assert first is second
        assert first.batch_id == "batch_1"

    def test_new_job_after_terminal_status(self, store):
        first, _ = store.get_or_create_active("42", "en")
        store.claim(first.job_id)
        store.update_status(first.job_id, JobStatus.FAILED)

        second, created = store.get_or_create_active("42", "en")

        assert created
        assert second.job_id != first.job_id

    def test_languages_are_separate(self, store):
        en, _ = store.get_or_create_active("42", "en")
        de, _ = store.get_or_create_active("42", "de")
        assert en.job_id != de.job_id

    def test_find_filters(self, store):
        a, _ = store.get_or_create_active("1", "en", "batch_1")
        store.get_or_create_active("2", "en", "batch_1")
        store.get_or_create_active("3", "de")
        store.claim(a.job_id)

        assert len(store.find(language="en")) == 2
        assert len(store.find(batch_id="batch_1", statuses=[JobStatus.PENDING])) == 1
        assert [j.subject_id for j in store.get_pending()] == ["2", "3"]
        assert store.latest("3", "de").language_code == "de"
        assert store.latest("9", "en") is None

    def test_count_by_status(self, store):
        a, _ = store.get_or_create_active("1", "en")
        store.get_or_create_active("2", "en")
        store.claim(a.job_id)

        counts = store.count_by_status()

        assert counts["pending"] == 1
        assert counts["processing"] == 1
        assert counts["approved"] == 0


class TestParquetPersistence:
    """Test the parquet round trip."""

    def test_round_trip(self, tmp_path):
        store = ParquetJobStore(tmp_path)
        job, _ = store.get_or_create_active("42", "en", "batch_1")
        store.claim(job.job_id)
        store.update_status(
            job.job_id,
            JobStatus.NEEDS_REVIEW,
            provider="openai",
            model="gpt-4o",
            request_payload={"model": "gpt-4o", "messages": []},
            input_tokens=1200,
            output_tokens=300,
            total_cost=0.006,
            score=0.75,
        )
        store.flush()

        reloaded = ParquetJobStore(tmp_path).get(job.job_id)

        assert reloaded.status == JobStatus.NEEDS_REVIEW
        assert reloaded.batch_id == "batch_1"
        assert reloaded.request_payload == {"model": "gpt-4o", "messages": []}
        assert reloaded.response_payload is None
        assert reloaded.input_tokens == 1200
        assert reloaded.total_cost == pytest.approx(0.006)
        assert reloaded.score == pytest.approx(0.75)
        assert reloaded.error_message is None
        assert reloaded.approved_at is None
        assert reloaded.created_at == job.created_at

    def test_buffer_flushes_automatically(self, tmp_path):
        store = ParquetJobStore(tmp_path, buffer_size=2)
        store.get_or_create_active("1", "en")
        assert not (tmp_path / "jobs.parquet").exists()

        store.get_or_create_active("2", "en")

        assert (tmp_path / "jobs.parquet").exists()
        assert len(ParquetJobStore(tmp_path).find()) == 2

    def test_memory_only_store_never_writes(self, tmp_path):
        store = ParquetJobStore(buffer_size=1)
        store.get_or_create_active("1", "en")
        store.flush()
        assert not list(tmp_path.iterdir())
