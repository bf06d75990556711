from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from core.pipeline import FAILED, SKIPPED, SUCCESS, RunResult
from core.scheduler import REFRESH_JOB_ID, SchedulerService

FINISHED = datetime(2026, 10, 19, 10, 0, 30, tzinfo=timezone.utc)


class _Job:
    def __init__(self, job_id: str):
        self.id = job_id
        self.next_run_time = None


class _FakeScheduler:
    def __init__(self, running: bool = False, job_ids: list[str] | None = None):
        self.running = running
        self._jobs = [_Job(job_id) for job_id in (job_ids or [])]
        self.shutdown_called = False
        self.raise_on_shutdown = False
        self.start_called = False
        self.remove_all_jobs_called = False
        self.add_job_calls: list[dict] = []

    def get_jobs(self):
        return self._jobs

    def shutdown(self):
        if self.raise_on_shutdown:
            raise RuntimeError("shutdown failed")
        self.shutdown_called = True

    def start(self):
        self.start_called = True
        self.running = True

    def remove_all_jobs(self):
        self.remove_all_jobs_called = True
        self._jobs = []

    def add_job(self, func, trigger=None, **kwargs):
        job_id = kwargs.get("id")
        if job_id:
            self._jobs.append(_Job(job_id))
        self.add_job_calls.append({"func": func, "trigger": trigger, **kwargs})


class _FakePipeline:
    def __init__(self, *results: RunResult):
        self.results = list(results)
        self.calls: list[bool] = []

    async def run(self, force: bool = False, now=None) -> RunResult:
        self.calls.append(force)
        return self.results.pop(0)


def _result(status: str, **kwargs) -> RunResult:
    return RunResult(status=status, forced=False, finished_at=FINISHED, **kwargs)


def _service(pipeline=None, scheduler=None) -> SchedulerService:
    service = SchedulerService(pipeline or _FakePipeline())
    service.scheduler = scheduler or _FakeScheduler()
    return service


def test_validate_registered_jobs_passes_when_refresh_job_exists():
    service = _service(scheduler=_FakeScheduler(job_ids=[REFRESH_JOB_ID]))

    # Should not raise
    service._validate_registered_jobs()


def test_validate_registered_jobs_raises_with_missing_ids():
    service = _service(scheduler=_FakeScheduler(job_ids=["stale_job"]))

    with pytest.raises(RuntimeError) as exc:
        service._validate_registered_jobs()

    assert str(exc.value) == "Scheduler missing critical jobs: refresh_reports"


def test_start_registers_minute_tick():
    fake = _FakeScheduler()
    service = _service(scheduler=fake)

    service.start()

    assert fake.start_called is True
    [call] = fake.add_job_calls
    assert call["id"] == REFRESH_JOB_ID
    assert call["max_instances"] == 1
    assert call["coalesce"] is True
    assert str(call["trigger"].fields[6]) == "*"  # minute


def test_start_is_idempotent_when_already_running(monkeypatch: pytest.MonkeyPatch):
    fake = _FakeScheduler(running=True, job_ids=[REFRESH_JOB_ID])
    service = _service(scheduler=fake)

    # If `start()` tries to register, fail fast.
    monkeypatch.setattr(
        service,
        "_register_refresh_jobs",
        lambda: (_ for _ in ()).throw(AssertionError("should not register")),
    )

    service.start()

    assert fake.start_called is False
    assert fake.remove_all_jobs_called is False


def test_start_clears_stale_jobs_before_registration():
    fake = _FakeScheduler(running=False, job_ids=["stale_job"])
    service = _service(scheduler=fake)

    service.start()

    assert fake.remove_all_jobs_called is True
    assert [job.id for job in fake.get_jobs()] == [REFRESH_JOB_ID]


def test_start_raises_when_required_jobs_missing(monkeypatch: pytest.MonkeyPatch):
    fake = _FakeScheduler(running=False)
    service = _service(scheduler=fake)

    monkeypatch.setattr(service, "_register_refresh_jobs", lambda: None)

    with pytest.raises(RuntimeError):
        service.start()

    assert fake.start_called is False


def test_shutdown_is_idempotent_when_already_stopped():
    fake = _FakeScheduler(running=False)
    service = _service(scheduler=fake)

    service.shutdown()

    assert fake.shutdown_called is False


def test_shutdown_logs_scheduler_errors():
    fake = _FakeScheduler(running=True)
    fake.raise_on_shutdown = True
    service = _service(scheduler=fake)

    # Should not raise
    service.shutdown()


def test_run_refresh_tracks_last_result_and_success():
    pipeline = _FakePipeline(
        _result(SUCCESS, snapshot_path="/reports/a/", manifest_count=1),
        _result(SKIPPED),
        _result(FAILED, error="boom"),
    )
    service = _service(pipeline=pipeline)

    asyncio.run(service.run_refresh(force=True))
    asyncio.run(service.run_refresh())
    asyncio.run(service.run_refresh())

    assert pipeline.calls == [True, False, False]
    assert service.last_result.status == FAILED
    assert service.last_success.snapshot_path == "/reports/a/"

    status = service.status()
    assert status["running"] is False
    assert status["last_result"]["error"] == "boom"
    assert status["last_success"]["manifest_count"] == 1
