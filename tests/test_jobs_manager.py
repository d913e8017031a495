from types import SimpleNamespace

import pytest

from jobs import manager as jobs_manager
from jobs.manager import (
    JOB_STATUS_CANCELLED,
    JOB_STATUS_ERROR,
    JOB_STATUS_PENDING,
    JOB_STATUS_SUCCESS,
    BackgroundJobManager,
    execute_job,
    sync_job_scope,
    sync_job_type,
)
from tests.sync_helpers import FakeRedis


class FakeSignature:
    def __init__(self, calls, kwargs):
        self._calls = calls
        self._kwargs = kwargs

    def apply_async(self, task_id=None):
        self._calls.append({"task_id": task_id, **self._kwargs})
        return SimpleNamespace(id=task_id)


class FakeTask:
    def __init__(self):
        self.calls = []

    def s(self, **kwargs):
        return FakeSignature(self.calls, kwargs)


@pytest.fixture
def fake_task(monkeypatch):
    task = FakeTask()
    monkeypatch.setattr(jobs_manager, "run_sync_job", task)
    return task


@pytest.fixture
def manager():
    return BackgroundJobManager(FakeRedis())


def test_sync_job_type_scopes_by_association():
    assert sync_job_type("genres") == "sync:genres"
    assert sync_job_type("games", "platform", 6) == "sync:games:platform:6"
    assert sync_job_type("games", "platform", 6) != sync_job_type("games", "platform_version", 6)


def test_enqueue_creates_job_and_schedules_task(manager, fake_task):
    job, created = manager.enqueue_job(
        sync_job_type("games", "platform", 6),
        "app._execute_sync_job",
        description="Syncing games",
        kwargs={"resource": "games", "association_value": 6},
    )

    assert created is True
    assert job["status"] == JOB_STATUS_PENDING
    assert job["task_id"] == job["id"]
    assert fake_task.calls == [
        {
            "task_id": job["id"],
            "job_id": job["id"],
            "job_type": "sync:games:platform:6",
            "runner_path": "app._execute_sync_job",
            "runner_kwargs": {"resource": "games", "association_value": 6},
        }
    ]


def test_sync_job_scope_is_the_resource():
    assert sync_job_scope("sync:games") == "sync:games"
    assert sync_job_scope("sync:games:platform:6") == "sync:games"
    assert sync_job_scope("sync:covers") != sync_job_scope("sync:games")


def test_active_job_of_same_resource_is_reused(manager, fake_task):
    first, _ = manager.enqueue_job("sync:games:platform:6", "app._execute_sync_job")
    second, created = manager.enqueue_job("sync:games:platform:6", "app._execute_sync_job")
    other, other_created = manager.enqueue_job("sync:games:platform:48", "app._execute_sync_job")
    genres, genres_created = manager.enqueue_job("sync:genres", "app._execute_sync_job")

    assert created is False
    assert second["id"] == first["id"]
    assert other_created is False
    assert other["id"] == first["id"]
    assert genres_created is True
    assert len(fake_task.calls) == 2


def test_platform_games_job_is_refused_while_full_games_sync_is_active(manager, fake_task):
    full, _ = manager.enqueue_job(sync_job_type("games"), "app._execute_sync_job")

    job, created = manager.enqueue_job(sync_job_type("games", "platform", 6), "app._execute_sync_job")

    assert created is False
    assert job["id"] == full["id"]
    assert len(fake_task.calls) == 1


def test_resource_lock_decides_between_concurrent_requests(fake_task):
    redis = FakeRedis()
    first_manager = BackgroundJobManager(redis)
    second_manager = BackgroundJobManager(redis)
    # Both requests passed the active-job check before either stored its job.
    second_manager._active = lambda job_type: None

    first, _ = first_manager.enqueue_job("sync:games", "app._execute_sync_job")
    second, created = second_manager.enqueue_job("sync:games:platform:6", "app._execute_sync_job")

    assert created is False
    assert second["id"] == first["id"]
    assert redis.get("catalog_sync:lock:sync:games") == first["id"]
    assert redis.expiries["catalog_sync:lock:sync:games"] == jobs_manager.SYNC_LOCK_TTL_SECONDS
    assert [job["id"] for job in first_manager.list_jobs()] == [first["id"]]
    assert len(fake_task.calls) == 1


def test_finishing_a_job_releases_the_resource_lock(manager, fake_task):
    first, _ = manager.enqueue_job("sync:games", "app._execute_sync_job")
    manager.finish_job(first["id"], JOB_STATUS_SUCCESS)

    second, created = manager.enqueue_job("sync:games:platform:6", "app._execute_sync_job")

    assert created is True
    assert second["id"] != first["id"]


def test_stale_lock_of_a_vanished_job_is_released(fake_task):
    redis = FakeRedis()
    redis.set("catalog_sync:lock:sync:games", "f" * 32)
    manager = BackgroundJobManager(redis)

    job, created = manager.enqueue_job("sync:games", "app._execute_sync_job")

    assert created is True
    assert redis.get("catalog_sync:lock:sync:games") == job["id"]


def test_queue_failure_marks_job_failed_and_frees_the_resource(manager, monkeypatch):
    class BrokenTask:
        def s(self, **kwargs):
            raise ConnectionError("broker unavailable")

    monkeypatch.setattr(jobs_manager, "run_sync_job", BrokenTask())

    with pytest.raises(ConnectionError):
        manager.enqueue_job("sync:games", "app._execute_sync_job")

    [stored] = manager.list_jobs()
    assert stored["status"] == JOB_STATUS_ERROR
    assert stored["error"] == "broker unavailable"
    assert manager.get_active_job("sync:games") is None


def test_request_cancel_flags_active_job(manager, fake_task):
    job, _ = manager.enqueue_job("sync:genres", "app._execute_sync_job")

    assert manager.is_cancel_requested(job["id"]) is False
    cancelled = manager.request_cancel(job["id"])

    assert cancelled["id"] == job["id"]
    assert manager.is_cancel_requested(job["id"]) is True
    assert manager.request_cancel("0" * 32) is None


def test_execute_job_records_progress_and_success(manager, fake_task):
    job, _ = manager.enqueue_job("sync:genres", "app._execute_sync_job")
    seen = []

    def runner(progress_callback, *, cancel_event, resource):
        progress_callback(current=5, total=10, message="halfway", data={"resource": resource})
        return {"status": "ok", "new_count": 10}

    final = execute_job(
        manager,
        job["id"],
        job["job_type"],
        runner,
        {"resource": "genres"},
        on_progress=seen.append,
    )

    assert final["status"] == JOB_STATUS_SUCCESS
    assert final["result"] == {"status": "ok", "new_count": 10}
    assert final["data"]["resource"] == "genres"
    assert seen[0]["progress_current"] == 5
    assert seen[0]["message"] == "halfway"


def test_execute_job_sets_cancel_event_once_requested(manager, fake_task):
    job, _ = manager.enqueue_job("sync:games", "app._execute_sync_job")

    def runner(progress_callback, *, cancel_event):
        progress_callback(current=1)
        assert not cancel_event.is_set()
        manager.request_cancel(job["id"])
        progress_callback(current=2)
        assert cancel_event.is_set()
        return {"status": "cancelled", "checkpoint": {"offset": 500}}

    final = execute_job(manager, job["id"], job["job_type"], runner)

    assert final["status"] == JOB_STATUS_CANCELLED
    assert final["result"]["checkpoint"] == {"offset": 500}
    assert manager.get_active_job("sync:games") is None


def test_execute_job_records_errors_and_reraises(manager, fake_task):
    job, _ = manager.enqueue_job("sync:games", "app._execute_sync_job")

    def runner(progress_callback, *, cancel_event):
        raise RuntimeError("IGDB request failed: 503")

    with pytest.raises(RuntimeError):
        execute_job(manager, job["id"], job["job_type"], runner)

    stored = manager.get_job(job["id"])
    assert stored["status"] == JOB_STATUS_ERROR
    assert stored["error"] == "IGDB request failed: 503"


def test_finished_jobs_are_pruned_beyond_the_limit(manager, fake_task):
    for index in range(jobs_manager.MAX_BACKGROUND_JOBS + 3):
        job, _ = manager.enqueue_job(sync_job_type("games", "platform", index), "app._execute_sync_job")
        manager.finish_job(job["id"], JOB_STATUS_SUCCESS)

    assert len(manager.list_jobs()) == jobs_manager.MAX_BACKGROUND_JOBS
