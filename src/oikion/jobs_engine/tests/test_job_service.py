from __future__ import annotations

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from oikion.config.settings import Settings
from oikion.exceptions.handlers import ValidationError
from oikion.jobs_engine.job_types import DEFAULT_JOB_TYPE_CONFIGS
from oikion.jobs_engine.models.job import BackgroundJob, JobStatus, JobType
from oikion.jobs_engine.orchestrator.base import OrchestratorJobStatus
from oikion.jobs_engine.orchestrator.mock import MockOrchestrator
from oikion.jobs_engine.services.callback_auth import build_callback_token
from oikion.jobs_engine.services.job_errors import OrchestratorError
from oikion.jobs_engine.services.job_service import JobService
from oikion.models.base import Base

EXPORT_PAYLOAD = {"exportType": "crm", "format": "xlsx"}
EXPORT_RESULT = {"exportType": "crm", "format": "xlsx", "rowCount": 42, "fileUrl": "https://cdn/x.xlsx"}


@pytest.fixture()
def session():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine, tables=[BackgroundJob.__table__])
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
        engine.dispose()


@pytest.fixture()
def settings():
    return Settings(
        JOB_CALLBACK_BASE_URL="http://jobs.test/",
        JOB_CALLBACK_SECRET="test-secret",
        JOB_POLL_INTERVAL_MS=2000,
    )


@pytest.fixture()
def orchestrator():
    return MockOrchestrator(DEFAULT_JOB_TYPE_CONFIGS, complete_after_seconds=None)


@pytest.fixture()
def service(session, orchestrator, settings):
    return JobService(session, orchestrator, settings=settings)


def _env(manifest):
    container = manifest["spec"]["template"]["spec"]["containers"][0]
    return {e["name"]: e.get("value") for e in container["env"]}


def test_submit_launches_workload_and_marks_running(service, orchestrator, session):
    outcome = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD, created_by="user-7")

    assert outcome.success is True
    assert outcome.duplicate is False
    assert outcome.status == JobStatus.RUNNING.value

    job = session.get(BackgroundJob, outcome.job_id)
    assert job.status == JobStatus.RUNNING.value
    assert job.progress == 0
    assert job.started_at is not None
    assert job.created_by == "user-7"
    assert job.orchestrator_job_name in orchestrator
    assert outcome.message == f"Job {job.orchestrator_job_name} created successfully"
    assert job.payload == EXPORT_PAYLOAD
    assert job.job_type == JobType.BULK_EXPORT.value


def test_submit_passes_callback_credentials_to_workload(service, orchestrator):
    outcome = service.submit_job("bulk-export", "org-1", EXPORT_PAYLOAD)

    job = service.get_job(outcome.job_id)
    env = _env(orchestrator.get_manifest(job.orchestrator_job_name))
    assert env["JOB_ID"] == outcome.job_id
    assert env["ORGANIZATION_ID"] == "org-1"
    assert env["CALLBACK_URL"] == f"http://jobs.test/api/v1/jobs/{outcome.job_id}/callback"
    assert env["CALLBACK_TOKEN"] == build_callback_token(outcome.job_id, "test-secret")


def test_submit_rejects_second_active_job_of_same_type(service, orchestrator):
    first = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD)
    second = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD)

    assert second.success is False
    assert second.duplicate is True
    assert second.job_id == first.job_id
    assert second.status == JobStatus.RUNNING.value
    assert second.message == "A bulk-export job is already running for this organization"
    assert len(orchestrator.list_jobs_by_tenant("org-1")) == 1


def test_submit_allows_other_tenants_and_types(service):
    assert service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).success
    assert service.submit_job(JobType.BULK_EXPORT, "org-2", EXPORT_PAYLOAD).success
    assert service.submit_job(
        JobType.NEWSLETTER_SEND, "org-1", {"campaignId": "camp-1"}
    ).success


def test_submit_after_terminal_job_is_allowed(service):
    first = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD)
    assert service.complete_job(first.job_id, "failed", error_message="boom")

    second = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD)
    assert second.success is True
    assert second.job_id != first.job_id


def test_concurrent_insert_loses_to_unique_index(service, orchestrator):
    winner = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD)
    real_find = service._find_active
    calls = []

    def stale_read(tenant_id, job_type):
        calls.append(tenant_id)
        # First read misses the winner, as a concurrent submitter would.
        return None if len(calls) == 1 else real_find(tenant_id, job_type)

    with patch.object(service, "_find_active", side_effect=stale_read):
        loser = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD)

    assert loser.success is False
    assert loser.duplicate is True
    assert loser.job_id == winner.job_id
    assert len(orchestrator.list_jobs_by_tenant("org-1")) == 1


def test_launch_failure_marks_job_failed(service, orchestrator, session):
    orchestrator.fail_on_create = True

    outcome = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD)

    assert outcome.success is False
    assert outcome.duplicate is False
    assert outcome.status == JobStatus.FAILED.value
    assert "reject job creation" in outcome.message
    job = session.get(BackgroundJob, outcome.job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == outcome.message
    assert job.completed_at is not None
    assert job.orchestrator_job_name is None


def test_launch_failure_frees_the_slot(service, orchestrator):
    orchestrator.fail_on_create = True
    service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD)
    orchestrator.fail_on_create = False

    assert service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).success


def test_unexpected_orchestrator_exception_is_recorded(session, settings):
    orchestrator = MagicMock()
    orchestrator.registry = DEFAULT_JOB_TYPE_CONFIGS
    orchestrator.create_job.side_effect = ConnectionError("cluster unreachable")
    service = JobService(session, orchestrator, settings=settings)

    outcome = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD)

    assert outcome.success is False
    assert service.get_job(outcome.job_id).error_message == "cluster unreachable"


def test_invalid_payload_raises_and_creates_nothing(service, session):
    with pytest.raises(ValidationError):
        service.submit_job(JobType.BULK_EXPORT, "org-1", {"exportType": "crm"})
    with pytest.raises(ValidationError):
        service.submit_job(JobType.MARKET_INTEL_SCRAPE, "org-1", {"platforms": []})
    assert session.query(BackgroundJob).count() == 0


def test_invalid_type_priority_and_tenant_raise(service):
    with pytest.raises(ValidationError):
        service.submit_job("pdf-render", "org-1", {})
    with pytest.raises(ValidationError):
        service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD, priority="urgent")
    with pytest.raises(ValidationError):
        service.submit_job(JobType.BULK_EXPORT, "", EXPORT_PAYLOAD)


def test_payload_type_tag_must_match_job_type(service):
    with pytest.raises(ValidationError):
        service.submit_job(JobType.BULK_EXPORT, "org-1", {**EXPORT_PAYLOAD, "type": "newsletter-send"})


def test_progress_never_decreases_and_message_is_latest(service):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id

    assert service.update_progress(job_id, 40, "rows 400/1000")
    assert service.update_progress(job_id, 20, "late report")

    job = service.get_job(job_id)
    assert job.progress == 40
    assert job.progress_message == "late report"
    assert job.status == JobStatus.RUNNING.value


def test_progress_is_clamped(service):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id

    service.update_progress(job_id, 150)
    assert service.get_job(job_id).progress == 100

    with pytest.raises(ValidationError):
        service.update_progress(job_id, "half")


@pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan")])
def test_non_finite_progress_is_rejected(service, value):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id
    service.update_progress(job_id, 30)

    with pytest.raises(ValidationError):
        service.update_progress(job_id, value)
    assert service.get_job(job_id).progress == 30


def test_progress_on_finished_or_unknown_job_is_ignored(service):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id
    service.complete_job(job_id, "failed", error_message="boom")

    assert service.update_progress(job_id, 80, "too late") is False
    assert service.update_progress("missing", 10) is False
    job = service.get_job(job_id)
    assert job.progress == 0
    assert job.progress_message is None


def test_complete_job_stores_normalised_result(service):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id

    assert service.complete_job(job_id, JobStatus.COMPLETED, result=EXPORT_RESULT) is True

    job = service.get_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.progress == 100
    assert job.completed_at is not None
    assert job.result["type"] == "bulk-export"
    assert job.result["row_count"] == 42
    assert job.result["file_url"] == "https://cdn/x.xlsx"
    assert job.error_message is None


def test_terminal_job_is_never_modified_again(service):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id
    service.complete_job(job_id, "completed", result=EXPORT_RESULT)
    completed_at = service.get_job(job_id).completed_at

    assert service.complete_job(job_id, "failed", error_message="late failure") is False
    assert service.complete_job(job_id, "completed", result=EXPORT_RESULT) is False
    assert service.cancel_job(job_id).success is False

    job = service.get_job(job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.error_message is None
    assert job.completed_at == completed_at


def test_complete_job_requires_matching_fields(service):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id

    with pytest.raises(ValidationError):
        service.complete_job(job_id, "completed")
    with pytest.raises(ValidationError):
        service.complete_job(job_id, "completed", result={"rowCount": -1, "exportType": "crm", "format": "csv"})
    with pytest.raises(ValidationError):
        service.complete_job(job_id, "failed")
    with pytest.raises(ValidationError):
        service.complete_job(job_id, "running")
    assert service.get_job(job_id).status == JobStatus.RUNNING.value


def test_complete_unknown_job_returns_false(service):
    assert service.complete_job("missing", "failed", error_message="x") is False


def test_early_callback_keeps_terminal_status(session, settings):
    class FastWorkerOrchestrator(MockOrchestrator):
        def create_job(self, **kwargs):
            created = super().create_job(**kwargs)
            # Worker finishes before the launch write lands.
            service.complete_job(kwargs["job_id"], "completed", result=EXPORT_RESULT)
            return created

    orchestrator = FastWorkerOrchestrator(DEFAULT_JOB_TYPE_CONFIGS, complete_after_seconds=None)
    service = JobService(session, orchestrator, settings=settings)

    outcome = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD)

    assert outcome.success is True
    assert outcome.status == JobStatus.COMPLETED.value
    job = service.get_job(outcome.job_id)
    assert job.status == JobStatus.COMPLETED.value
    assert job.orchestrator_job_name is not None
    assert job.started_at is None
    assert job.orchestrator_job_name in orchestrator


def test_cancel_during_launch_removes_new_workload(session, settings):
    class SlowLaunchOrchestrator(MockOrchestrator):
        def create_job(self, **kwargs):
            created = super().create_job(**kwargs)
            # Caller cancels before the launch write lands.
            assert service.cancel_job(kwargs["job_id"]).success is True
            return created

    orchestrator = SlowLaunchOrchestrator(DEFAULT_JOB_TYPE_CONFIGS, complete_after_seconds=None)
    service = JobService(session, orchestrator, settings=settings)

    outcome = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD)

    assert outcome.status == JobStatus.CANCELLED.value
    job = service.get_job(outcome.job_id)
    assert job.status == JobStatus.CANCELLED.value
    assert job.started_at is None
    assert job.orchestrator_job_name is not None
    assert job.orchestrator_job_name not in orchestrator


def test_cancel_running_job_deletes_workload(service, orchestrator):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id
    job_name = service.get_job(job_id).orchestrator_job_name

    result = service.cancel_job(job_id)

    assert result.success is True
    assert result.message == "Job cancelled successfully"
    assert job_name not in orchestrator
    job = service.get_job(job_id)
    assert job.status == JobStatus.CANCELLED.value
    assert job.completed_at is not None

    again = service.cancel_job(job_id)
    assert again.success is False
    assert again.message == "Job is not cancellable"


def test_cancel_survives_orchestrator_delete_failure(service, orchestrator):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id
    orchestrator.fail_on_delete = True

    assert service.cancel_job(job_id).success is True
    assert service.get_job(job_id).status == JobStatus.CANCELLED.value


def test_cancel_unknown_job(service):
    result = service.cancel_job("missing")
    assert result.success is False
    assert result.message == "Job not found"


def test_handle_callback_dispatches_events(service):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id

    assert service.handle_callback(job_id, {"event": "job.started", "jobId": job_id, "data": {}})
    assert service.get_job(job_id).progress_message == "Job started"

    assert service.handle_callback(
        job_id,
        {
            "event": "job.progress",
            "jobId": job_id,
            "timestamp": "2026-10-17T10:00:00Z",
            "data": {"progress": 55, "message": "halfway"},
        },
    )
    job = service.get_job(job_id)
    assert (job.progress, job.progress_message) == (55, "halfway")

    assert service.handle_callback(
        job_id, {"event": "job.completed", "data": {"result": EXPORT_RESULT}}
    )
    assert service.get_job(job_id).status == JobStatus.COMPLETED.value


def test_handle_callback_failure_event(service):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id

    assert service.handle_callback(
        job_id, {"event": "job.failed", "data": {"errorMessage": "S3 upload failed"}}
    )
    job = service.get_job(job_id)
    assert job.status == JobStatus.FAILED.value
    assert job.error_message == "S3 upload failed"


def test_handle_callback_rejects_bad_envelopes(service):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id

    with pytest.raises(ValidationError):
        service.handle_callback(job_id, {"event": "job.exploded"})
    with pytest.raises(ValidationError):
        service.handle_callback(job_id, {"event": "job.progress", "jobId": "other", "data": {"progress": 1}})
    with pytest.raises(ValidationError):
        service.handle_callback(job_id, {"event": "job.progress", "data": {}})


def _insert(session, **kwargs):
    values = {
        "job_type": JobType.BULK_EXPORT.value,
        "tenant_id": "org-1",
        "status": JobStatus.COMPLETED.value,
        "payload": {"type": "bulk-export"},
    }
    values.update(kwargs)
    job = BackgroundJob(**values)
    session.add(job)
    session.commit()
    return job


def test_list_jobs_filters_and_orders_newest_first(service, session):
    base = datetime(2026, 10, 1, 12, 0, 0)
    oldest = _insert(session, created_at=base)
    middle = _insert(session, created_at=base + timedelta(minutes=1), status=JobStatus.FAILED.value)
    newest = _insert(
        session,
        created_at=base + timedelta(minutes=2),
        job_type=JobType.NEWSLETTER_SEND.value,
        payload={"type": "newsletter-send"},
    )
    _insert(session, tenant_id="org-2", created_at=base)

    jobs, total = service.get_jobs_by_organization("org-1")
    assert total == 3
    assert [j.id for j in jobs] == [newest.id, middle.id, oldest.id]

    jobs, total = service.get_jobs_by_organization("org-1", job_type="bulk-export")
    assert total == 2

    jobs, total = service.get_jobs_by_organization("org-1", statuses=["failed"])
    assert [j.id for j in jobs] == [middle.id]

    jobs, total = service.get_jobs_by_organization("org-1", limit=1, offset=1)
    assert total == 3
    assert [j.id for j in jobs] == [middle.id]

    with pytest.raises(ValidationError):
        service.get_jobs_by_organization("org-1", limit=0)


def test_get_job_status_includes_live_orchestrator_state(service, orchestrator):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id

    view = service.get_job_status(job_id)
    assert view.job.id == job_id
    assert view.orchestrator_status == {"active": 1, "succeeded": 0, "failed": 0}
    assert service.poll_after_ms(view.job) == 2000

    with patch.object(orchestrator, "get_job_status", side_effect=OrchestratorError("down")):
        view = service.get_job_status(job_id)
    assert view.orchestrator_status is None

    assert service.get_job_status("missing") is None


def test_poll_hint_stops_once_terminal(service):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id
    service.cancel_job(job_id)

    assert service.poll_after_ms(service.get_job(job_id)) is None


def test_get_job_logs_records_pod_name(service, orchestrator):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id
    job_name = service.get_job(job_id).orchestrator_job_name
    orchestrator.set_status(job_name, OrchestratorJobStatus(succeeded=1))

    logs = service.get_job_logs(job_id)

    assert f"started {job_name}" in logs
    assert service.get_job(job_id).orchestrator_pod_name == f"{job_name}-pod"
    assert service.get_job_logs("missing") is None


def test_get_job_logs_leaves_finished_job_untouched(service, orchestrator):
    job_id = service.submit_job(JobType.BULK_EXPORT, "org-1", EXPORT_PAYLOAD).job_id
    service.complete_job(job_id, "completed", result=EXPORT_RESULT)
    completed_at = service.get_job(job_id).completed_at

    logs = service.get_job_logs(job_id, tail_lines=1)

    assert "[mock] started" in logs
    job = service.get_job(job_id)
    assert job.orchestrator_pod_name is None
    assert job.completed_at == completed_at
