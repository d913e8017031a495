"""Celery-backed background sync jobs with their state kept in Redis.

One job runs per resource (see :func:`sync_job_scope`). Enqueueing takes a
Redis ``SET NX`` lock on the resource; while its holder is pending or
running, further requests for any scope of that resource get the holder
back instead of a duplicate. Runners observe cancellation through the
event handed to them, which is set from the Redis cancel flag whenever
they report progress.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
import uuid
from datetime import datetime, timezone
from importlib import import_module
from typing import Any, Callable, Iterator, Mapping, Optional

from celery import Celery, states
from celery.app.task import Task
from redis import Redis
from redis.exceptions import RedisError

from config import (
    CELERY_BROKER_URL,
    CELERY_RESULT_BACKEND,
    CELERY_TASK_ALWAYS_EAGER,
    JOB_REDIS_URL,
)

logger = logging.getLogger(__name__)


MAX_BACKGROUND_JOBS = 50
# Expiry of a resource lock whose worker died without finishing its job.
SYNC_LOCK_TTL_SECONDS = 6 * 60 * 60

JOB_STATUS_PENDING = 'pending'
JOB_STATUS_RUNNING = 'running'
JOB_STATUS_SUCCESS = 'success'
JOB_STATUS_ERROR = 'error'
JOB_STATUS_CANCELLED = 'cancelled'
JOB_ACTIVE_STATUSES = {JOB_STATUS_PENDING, JOB_STATUS_RUNNING}
JOB_TERMINAL_STATUSES = {JOB_STATUS_SUCCESS, JOB_STATUS_ERROR, JOB_STATUS_CANCELLED}


celery_app = Celery('igdb_catalog_sync')
celery_app.conf.update(
    broker_url=CELERY_BROKER_URL,
    result_backend=CELERY_RESULT_BACKEND,
    task_track_started=True,
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    task_always_eager=CELERY_TASK_ALWAYS_EAGER,
    task_eager_propagates=CELERY_TASK_ALWAYS_EAGER,
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def sync_job_type(
    resource: str,
    association_kind: str | None = None,
    association_value: Any = None,
) -> str:
    """Return the job type of a sync, e.g. ``sync:games:platform:6``."""

    key = f'sync:{resource}'
    if association_kind:
        key = f'{key}:{association_kind}:{association_value}'
    return key


def sync_job_scope(job_type: str) -> str:
    """Return the resource a job type locks.

    ``sync:games`` and ``sync:games:platform:6`` both write ``igdb_games``
    and share the ``sync:games`` scope, so they never run side by side.
    """

    return ':'.join(job_type.split(':', 2)[:2])


@dataclasses.dataclass
class SyncJob:
    id: str
    job_type: str
    status: str = JOB_STATUS_PENDING
    message: str = ''
    progress_current: int = 0
    progress_total: int = 0
    data: dict[str, Any] = dataclasses.field(default_factory=dict)
    result: dict[str, Any] = dataclasses.field(default_factory=dict)
    error: Optional[str] = None
    created_at: str = ''
    updated_at: str = ''
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    task_id: Optional[str] = None

    @property
    def active(self) -> bool:
        return self.status in JOB_ACTIVE_STATUSES

    def touch(self) -> None:
        self.updated_at = _now()

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> 'SyncJob':
        known = {item.name for item in dataclasses.fields(cls)}
        values = {key: value for key, value in payload.items() if key in known}
        values['id'] = str(values.get('id') or '')
        values['job_type'] = str(values.get('job_type') or '')
        values['data'] = dict(values.get('data') or {})
        values['result'] = dict(values.get('result') or {})
        return cls(**values)


class RedisJobStore:
    """Jobs as JSON strings under ``catalog_sync:jobs:<id>`` plus a time index."""

    INDEX_KEY = 'catalog_sync:jobs'
    LOCK_PREFIX = 'catalog_sync:lock'

    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    def _key(self, job_id: str) -> str:
        return f'{self.INDEX_KEY}:{job_id}'

    def _cancel_key(self, job_id: str) -> str:
        return f'{self.INDEX_KEY}:{job_id}:cancel'

    def _lock_key(self, scope: str) -> str:
        return f'{self.LOCK_PREFIX}:{scope}'

    def claim(self, scope: str, job_id: str) -> bool:
        """Atomically take the lock of ``scope`` for ``job_id``."""

        return bool(
            self._redis.set(self._lock_key(scope), job_id, nx=True, ex=SYNC_LOCK_TTL_SECONDS)
        )

    def lock_holder(self, scope: str) -> str | None:
        return self._redis.get(self._lock_key(scope))

    def release(self, scope: str, job_id: str | None) -> None:
        key = self._lock_key(scope)
        if job_id and self._redis.get(key) == job_id:
            self._redis.delete(key)

    def add(self, job: SyncJob) -> None:
        with self._redis.pipeline() as pipe:
            pipe.set(self._key(job.id), json.dumps(job.to_dict(), default=str))
            pipe.zadd(self.INDEX_KEY, {job.id: time.time()})
            pipe.execute()

    def save(self, job: SyncJob) -> None:
        self._redis.set(self._key(job.id), json.dumps(job.to_dict(), default=str))

    def load(self, job_id: str) -> SyncJob | None:
        try:
            raw = self._redis.get(self._key(job_id))
        except RedisError as exc:
            logger.error('Failed to load job %s: %s', job_id, exc)
            return None
        if not raw:
            return None
        try:
            return SyncJob.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError) as exc:
            logger.error('Discarding unreadable job %s: %s', job_id, exc)
            return None

    def __iter__(self) -> Iterator[SyncJob]:
        try:
            job_ids = self._redis.zrange(self.INDEX_KEY, 0, -1)
        except RedisError as exc:
            logger.error('Failed to read job index: %s', exc)
            return
        for job_id in job_ids:
            job = self.load(job_id)
            if job is not None:
                yield job

    def __len__(self) -> int:
        return int(self._redis.zcard(self.INDEX_KEY))

    def remove(self, job_id: str) -> None:
        if self._redis.zrem(self.INDEX_KEY, job_id):
            self._redis.delete(self._key(job_id), self._cancel_key(job_id))

    def flag_cancel(self, job_id: str) -> None:
        self._redis.set(self._cancel_key(job_id), '1')

    def cancel_flagged(self, job_id: str) -> bool:
        try:
            return bool(self._redis.get(self._cancel_key(job_id)))
        except RedisError as exc:
            logger.error('Failed to read cancel flag of job %s: %s', job_id, exc)
            return False


class BackgroundJobManager:
    """Queue sync runners on Celery and track their progress in Redis."""

    def __init__(self, redis_client: Any | None = None) -> None:
        self._store = RedisJobStore(
            redis_client or Redis.from_url(JOB_REDIS_URL, decode_responses=True)
        )

    def get_job(self, job_id: str) -> dict[str, Any] | None:
        job = self._store.load(job_id)
        return job.to_dict() if job else None

    def get_active_job(self, job_type: str) -> dict[str, Any] | None:
        job = self._active(job_type)
        return job.to_dict() if job else None

    def list_jobs(self, job_type: str | None = None) -> list[dict[str, Any]]:
        jobs = [job for job in self._store if not job_type or job.job_type == job_type]
        jobs.sort(key=lambda job: job.created_at)
        return [job.to_dict() for job in jobs]

    def _active(self, job_type: str) -> SyncJob | None:
        scope = sync_job_scope(job_type)
        return next(
            (job for job in self._store if job.active and sync_job_scope(job.job_type) == scope),
            None,
        )

    def _claim(self, scope: str, job_id: str) -> SyncJob | None:
        """Take the lock of ``scope`` for ``job_id``.

        Returns ``None`` once claimed, otherwise the active job holding it.
        A lock left by a finished or vanished job is released first.
        """

        while not self._store.claim(scope, job_id):
            holder_id = self._store.lock_holder(scope)
            holder = self._store.load(holder_id) if holder_id else None
            if holder is not None and holder.active:
                return holder
            logger.warning('Releasing stale %s lock held by job %s', scope, holder_id)
            self._store.release(scope, holder_id)
        return None

    def enqueue_job(
        self,
        job_type: str,
        runner_path: str,
        *,
        description: str | None = None,
        kwargs: Optional[Mapping[str, Any]] = None,
    ) -> tuple[dict[str, Any], bool]:
        """Queue ``runner_path`` unless a job of the same resource is still active.

        Returns the job payload and whether a new job was created.
        """

        existing = self._active(job_type)
        if existing is not None:
            logger.info('Reusing active job %s for %s', existing.id, job_type)
            return existing.to_dict(), False

        timestamp = _now()
        job = SyncJob(
            id=uuid.uuid4().hex,
            job_type=job_type,
            message=description or '',
            created_at=timestamp,
            updated_at=timestamp,
        )
        # The job is stored before claiming so a competing request sees its holder.
        self._store.add(job)
        holder = self._claim(sync_job_scope(job_type), job.id)
        if holder is not None:
            self._store.remove(job.id)
            logger.info('Reusing active job %s for %s', holder.id, job_type)
            return holder.to_dict(), False
        self._prune()

        try:
            async_result = run_sync_job.s(
                job_id=job.id,
                job_type=job_type,
                runner_path=runner_path,
                runner_kwargs=dict(kwargs or {}),
            ).apply_async(task_id=job.id)
        except Exception as exc:
            logger.error('Failed to queue job %s (%s): %s', job.id, job_type, exc)
            self.finish_job(job.id, JOB_STATUS_ERROR, error=str(exc))
            raise
        job.task_id = async_result.id
        job.touch()
        self._store.save(job)
        logger.info('Queued job %s (%s)', job.id, job_type)
        return job.to_dict(), True

    def _prune(self) -> None:
        excess = len(self._store) - MAX_BACKGROUND_JOBS
        if excess <= 0:
            return
        finished = sorted(
            (job for job in self._store if not job.active),
            key=lambda job: job.finished_at or job.updated_at,
        )
        for job in finished[:excess]:
            self._store.remove(job.id)
            logger.debug('Pruned job %s', job.id)

    def request_cancel(self, job_id: str) -> dict[str, Any] | None:
        """Flag an active job; its runner stops at the next progress report."""

        job = self._store.load(job_id)
        if job is None:
            return None
        if job.active:
            self._store.flag_cancel(job_id)
            job.message = 'Cancellation requested…'
            job.touch()
            self._store.save(job)
            logger.info('Cancellation requested for job %s', job_id)
        return job.to_dict()

    def is_cancel_requested(self, job_id: str) -> bool:
        return self._store.cancel_flagged(job_id)

    def mark_running(self, job_id: str, *, task_id: str | None = None) -> None:
        job = self._store.load(job_id)
        if job is None:
            return
        job.status = JOB_STATUS_RUNNING
        job.started_at = _now()
        job.task_id = task_id or job.task_id
        job.message = job.message or 'Running…'
        job.touch()
        self._store.save(job)

    def record_progress(
        self,
        job_id: str,
        *,
        current: Any = None,
        total: Any = None,
        message: str | None = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> None:
        job = self._store.load(job_id)
        if job is None:
            return
        if current is not None:
            job.progress_current = _non_negative(current)
        if total is not None:
            job.progress_total = _non_negative(total)
        if message is not None:
            job.message = str(message)
        job.data.update(data or {})
        job.touch()
        self._store.save(job)

    def finish_job(
        self,
        job_id: str,
        status: str,
        result: Optional[Mapping[str, Any]] = None,
        error: str | None = None,
    ) -> None:
        job = self._store.load(job_id)
        if job is None:
            return
        job.status = status
        job.result = dict(result or {})
        job.error = error
        job.finished_at = _now()
        job.updated_at = job.finished_at
        self._store.save(job)
        self._store.release(sync_job_scope(job.job_type), job_id)


def _non_negative(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def _resolve_runner(runner_path: str) -> Callable[..., Any]:
    module_path, _, attr = runner_path.replace(':', '.').rpartition('.')
    runner = getattr(import_module(module_path), attr)
    if not callable(runner):
        raise RuntimeError(f'Runner {runner_path} is not callable')
    return runner


def execute_job(
    manager: BackgroundJobManager,
    job_id: str,
    job_type: str,
    runner: Callable[..., Any],
    runner_kwargs: Optional[Mapping[str, Any]] = None,
    *,
    task_id: str | None = None,
    on_progress: Callable[[dict[str, Any]], None] | None = None,
) -> dict[str, Any]:
    """Run ``runner`` for ``job_id`` and record its progress and outcome.

    The runner is called as ``runner(progress_callback, cancel_event=...,
    **runner_kwargs)``. A mapping result whose ``status`` is ``cancelled``
    finishes the job as cancelled.
    """

    manager.mark_running(job_id, task_id=task_id)
    cancel_event = threading.Event()

    def progress_callback(
        current: int | None = None,
        total: int | None = None,
        message: str | None = None,
        *,
        data: Optional[Mapping[str, Any]] = None,
        **extra: Any,
    ) -> None:
        merged = dict(data or {})
        merged.update({key: value for key, value in extra.items() if value is not None})
        manager.record_progress(job_id, current=current, total=total, message=message, data=merged)
        if manager.is_cancel_requested(job_id):
            cancel_event.set()
        if on_progress is not None:
            snapshot = manager.get_job(job_id)
            if snapshot is not None:
                on_progress(snapshot)

    try:
        outcome = runner(progress_callback, cancel_event=cancel_event, **(runner_kwargs or {}))
    except Exception as exc:
        logger.exception('Job %s (%s) failed', job_id, job_type)
        manager.finish_job(job_id, JOB_STATUS_ERROR, error=str(exc))
        raise

    if outcome is None:
        result: dict[str, Any] = {}
    elif isinstance(outcome, Mapping):
        result = dict(outcome)
    else:
        result = {'result': outcome}
    status = JOB_STATUS_CANCELLED if result.get('status') == JOB_STATUS_CANCELLED else JOB_STATUS_SUCCESS
    manager.finish_job(job_id, status, result=result)
    logger.info('Job %s (%s) finished with status %s', job_id, job_type, status)
    return manager.get_job(job_id) or {}


@celery_app.task(name='jobs.run_sync_job', bind=True)
def run_sync_job(
    self: Task,
    *,
    job_id: str,
    job_type: str,
    runner_path: str,
    runner_kwargs: Optional[Mapping[str, Any]] = None,
) -> dict[str, Any]:
    try:
        final_job = execute_job(
            get_job_manager(),
            job_id,
            job_type,
            _resolve_runner(runner_path),
            runner_kwargs,
            task_id=getattr(self.request, 'id', None),
            on_progress=lambda snapshot: self.update_state(state='PROGRESS', meta=snapshot),
        )
    except Exception as exc:
        self.update_state(state=states.FAILURE, meta={'exc_message': str(exc)})
        raise
    self.update_state(state=states.SUCCESS, meta=final_job)
    return final_job


_JOB_MANAGER: BackgroundJobManager | None = None


def get_job_manager() -> BackgroundJobManager:
    """Return the process-wide :class:`BackgroundJobManager`."""

    global _JOB_MANAGER
    if _JOB_MANAGER is None:
        _JOB_MANAGER = BackgroundJobManager()
    return _JOB_MANAGER


__all__ = [
    'BackgroundJobManager',
    'JOB_ACTIVE_STATUSES',
    'JOB_STATUS_CANCELLED',
    'JOB_STATUS_ERROR',
    'JOB_STATUS_PENDING',
    'JOB_STATUS_RUNNING',
    'JOB_STATUS_SUCCESS',
    'JOB_TERMINAL_STATUSES',
    'MAX_BACKGROUND_JOBS',
    'RedisJobStore',
    'SYNC_LOCK_TTL_SECONDS',
    'SyncJob',
    'celery_app',
    'execute_job',
    'get_job_manager',
    'run_sync_job',
    'sync_job_scope',
    'sync_job_type',
]
