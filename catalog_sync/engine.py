"""Paginated synchronization of IGDB resources into the local catalog.

One :class:`SyncOrchestrator` drives every resource. It requests pages at
an advancing offset, transforms and upserts each record and stops at the
first page shorter than the page size. Transport failures abort the run;
per-record persistence failures are collected in ``failed_ids``.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Sequence

from catalog_sync.errors import PersistenceError, SyncCancelled, TransportError
from catalog_sync.resources import ResourceSpec, get_resource
from catalog_sync.store import CatalogStore, SqlCatalogStore
from catalog_sync.transform import RecordTransformer
from catalog_sync.upsert import UpsertOutcome, Upserter
from helpers import _chunked, coerce_igdb_id
from igdb.client import IGDBClient
from igdb.query import IGDB_MAX_PAGE_SIZE, build_query, resolve_igdb_page_size

logger = logging.getLogger(__name__)


ProgressCallback = Callable[..., None]
CheckpointCallback = Callable[["SyncCheckpoint"], None]


class SyncState(enum.Enum):
    FETCHING = "fetching"
    PROCESSING = "processing"
    DONE = "done"


@dataclass(frozen=True)
class FilterStrategy:
    """Upstream field and value a sync is scoped to.

    ``field`` of ``None`` requests the whole endpoint.
    """

    field: str | None = None
    value: Any = None

    @property
    def is_filtered(self) -> bool:
        return bool(self.field) and self.value is not None

    @classmethod
    def for_resource(cls, spec: ResourceSpec, value: Any = None) -> "FilterStrategy":
        if value is None:
            return cls()
        return cls(spec.filter_field, value)

    @classmethod
    def by_association(cls, spec: ResourceSpec, kind: str, value: Any) -> "FilterStrategy":
        return cls(spec.association(kind).filter_field, value)

    @classmethod
    def by_platform(cls, platform_id: int) -> "FilterStrategy":
        return cls.by_association(get_resource("games"), "platform", platform_id)

    @classmethod
    def by_platform_version(cls, version_id: int) -> "FilterStrategy":
        return cls.by_association(get_resource("games"), "platform_version", version_id)


@dataclass
class SyncCursor:
    resource: str
    filter_value: Any
    offset: int
    page_size: int
    sort_key: str = "id"

    def advance(self) -> None:
        self.offset += self.page_size


@dataclass(frozen=True)
class SyncCheckpoint:
    """Resumable position of a sync: the offset of the next page to fetch."""

    resource: str
    filter_value: Any
    offset: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "filter_value": self.filter_value,
            "offset": self.offset,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SyncCheckpoint":
        try:
            offset = max(int(payload.get("offset") or 0), 0)
        except (TypeError, ValueError):
            offset = 0
        return cls(
            resource=str(payload.get("resource") or ""),
            filter_value=payload.get("filter_value"),
            offset=offset,
        )


@dataclass(frozen=True)
class SyncResult:
    resource: str
    total_processed: int = 0
    new_count: int = 0
    updated_count: int = 0
    failed_ids: tuple[Any, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource,
            "total_processed": self.total_processed,
            "new_count": self.new_count,
            "updated_count": self.updated_count,
            "failed_ids": list(self.failed_ids),
        }

    @classmethod
    def merge(cls, resource: str, results: Iterable["SyncResult"]) -> "SyncResult":
        total = new = updated = 0
        failed: list[Any] = []
        for result in results:
            total += result.total_processed
            new += result.new_count
            updated += result.updated_count
            failed.extend(result.failed_ids)
        return cls(resource, total, new, updated, tuple(failed))


@dataclass
class _ResultAccumulator:
    resource: str
    new_count: int = 0
    updated_count: int = 0
    failed_ids: list[Any] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def total_processed(self) -> int:
        return self.new_count + self.updated_count + len(self.failed_ids)

    def record(self, outcome: UpsertOutcome) -> None:
        with self._lock:
            if outcome is UpsertOutcome.CREATED:
                self.new_count += 1
            else:
                self.updated_count += 1

    def fail(self, external_id: Any) -> None:
        with self._lock:
            self.failed_ids.append(external_id)

    def snapshot(self) -> SyncResult:
        with self._lock:
            return SyncResult(
                resource=self.resource,
                total_processed=self.total_processed,
                new_count=self.new_count,
                updated_count=self.updated_count,
                failed_ids=tuple(self.failed_ids),
            )


class SyncOrchestrator:
    """Drive one resource sync from the first page to the short last page."""

    def __init__(
        self,
        spec: ResourceSpec,
        client: IGDBClient,
        store: CatalogStore,
        *,
        page_size: int = IGDB_MAX_PAGE_SIZE,
        filter_strategy: FilterStrategy | None = None,
        association: tuple[str, Any] | None = None,
        checkpoint: SyncCheckpoint | None = None,
        db_batch_size: int = 100,
        db_batch_pause: float = 0.1,
        workers: int = 1,
        cancel_event: threading.Event | None = None,
        on_checkpoint: CheckpointCallback | None = None,
        progress_callback: ProgressCallback | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._spec = spec
        self._client = client
        self._filter = filter_strategy or FilterStrategy()
        self._association = association
        self._transformer = RecordTransformer(spec)
        self._upserter = Upserter(store, spec)
        self._db_batch_size = max(int(db_batch_size or 1), 1)
        self._db_batch_pause = max(float(db_batch_pause or 0.0), 0.0)
        self._workers = max(int(workers or 1), 1)
        self._cancel_event = cancel_event
        self._on_checkpoint = on_checkpoint
        self._progress_callback = progress_callback
        self._sleep = sleep or time.sleep
        self._state = SyncState.FETCHING
        self._result = _ResultAccumulator(spec.name)

        start_offset = 0
        if checkpoint is not None:
            if checkpoint.resource != spec.name or checkpoint.filter_value != self._filter.value:
                raise ValueError(
                    f"checkpoint for {checkpoint.resource}/{checkpoint.filter_value!r} "
                    f"does not match {spec.name}/{self._filter.value!r}"
                )
            start_offset = max(int(checkpoint.offset), 0)

        self._cursor = SyncCursor(
            resource=spec.name,
            filter_value=self._filter.value,
            offset=start_offset,
            page_size=resolve_igdb_page_size(page_size),
            sort_key=spec.sort_field,
        )

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def cursor(self) -> SyncCursor:
        return self._cursor

    def checkpoint(self) -> SyncCheckpoint:
        return SyncCheckpoint(self._cursor.resource, self._cursor.filter_value, self._cursor.offset)

    def run(self) -> SyncResult:
        spec = self._spec
        cursor = self._cursor
        logger.info(
            "Starting %s sync (filter=%s %r, offset=%d, page_size=%d)",
            spec.name,
            self._filter.field,
            self._filter.value,
            cursor.offset,
            cursor.page_size,
        )

        while True:
            self._check_cancelled()
            self._state = SyncState.FETCHING
            try:
                page = self._client.fetch_page(spec.endpoint, self._build_query())
            except TransportError as exc:
                exc.result = self._result.snapshot()
                exc.checkpoint = self.checkpoint()
                raise
            logger.info(
                "Fetched %d %s records at offset %d", len(page), spec.name, cursor.offset
            )

            self._state = SyncState.PROCESSING
            self._process_page(page)
            cursor.advance()
            self._emit_checkpoint()
            self._report_progress()

            if len(page) < cursor.page_size:
                break

        self._state = SyncState.DONE
        result = self._result.snapshot()
        logger.info(
            "Finished %s sync: %d processed, %d new, %d updated, %d failed",
            spec.name,
            result.total_processed,
            result.new_count,
            result.updated_count,
            len(result.failed_ids),
        )
        return result

    def _build_query(self) -> str:
        spec = self._spec
        return build_query(
            spec.fields,
            filter_field=self._filter.field if self._filter.is_filtered else None,
            filter_value=self._filter.value if self._filter.is_filtered else None,
            where=spec.where,
            limit=self._cursor.page_size,
            offset=self._cursor.offset,
            sort_field=self._cursor.sort_key,
        )

    def _process_page(self, records: Sequence[Mapping[str, Any]]) -> None:
        batches = list(_chunked(list(records), self._db_batch_size))
        for index, batch in enumerate(batches):
            if index and self._db_batch_pause:
                self._sleep(self._db_batch_pause)
            if self._workers == 1:
                for record in batch:
                    self._check_cancelled()
                    self._process_record(record)
                continue
            with ThreadPoolExecutor(max_workers=self._workers) as executor:
                list(executor.map(self._process_record_unless_cancelled, batch))
            self._check_cancelled()

    def _process_record_unless_cancelled(self, record: Mapping[str, Any]) -> None:
        if self._is_cancelled():
            return
        self._process_record(record)

    def _process_record(self, record: Mapping[str, Any]) -> None:
        spec = self._spec
        try:
            draft = self._transformer.transform(record, self._association)
        except (TypeError, ValueError) as exc:
            raw_id = record.get("id") if isinstance(record, Mapping) else None
            external_id = coerce_igdb_id(raw_id)
            logger.warning(
                "Skipping %s record %r: %s",
                spec.name,
                external_id if external_id is not None else raw_id,
                exc,
            )
            self._result.fail(external_id if external_id is not None else raw_id)
            return

        try:
            outcome = self._upserter.upsert(draft)
        except PersistenceError as exc:
            logger.exception("Failed to persist %s %s: %s", spec.name, exc.external_id, exc)
            self._result.fail(exc.external_id)
            return
        self._result.record(outcome)

    def _is_cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def _check_cancelled(self) -> None:
        if not self._is_cancelled():
            return
        result = self._result.snapshot()
        checkpoint = self.checkpoint()
        logger.warning(
            "%s sync cancelled at offset %d after %d records",
            self._spec.name,
            checkpoint.offset,
            result.total_processed,
        )
        raise SyncCancelled(result, checkpoint)

    def _emit_checkpoint(self) -> None:
        if self._on_checkpoint is not None:
            self._on_checkpoint(self.checkpoint())

    def _report_progress(self) -> None:
        if self._progress_callback is None:
            return
        result = self._result.snapshot()
        self._progress_callback(
            current=result.total_processed,
            message=f"Synced {result.total_processed} {self._spec.name}",
            data={
                "resource": self._spec.name,
                "offset": self._cursor.offset,
                "new_count": result.new_count,
                "updated_count": result.updated_count,
                "failed_count": len(result.failed_ids),
            },
        )


def build_default_client() -> IGDBClient:
    """Return an :class:`IGDBClient` configured from :mod:`config`."""

    from config import (
        IGDB_CLIENT_ID,
        IGDB_CLIENT_SECRET,
        IGDB_REQUESTS_PER_SECOND,
        IGDB_USER_AGENT,
    )
    from igdb.client import TwitchTokenSource
    from igdb.rate_limit import RateLimiter

    return IGDBClient(
        client_id=IGDB_CLIENT_ID,
        token_source=TwitchTokenSource(IGDB_CLIENT_ID, IGDB_CLIENT_SECRET),
        rate_limiter=RateLimiter.per_second(IGDB_REQUESTS_PER_SECOND),
        user_agent=IGDB_USER_AGENT,
    )


def build_default_store() -> SqlCatalogStore:
    """Return a :class:`SqlCatalogStore` on the configured database."""

    from config import DB_CONNECT_TIMEOUT_SECONDS, DB_DSN
    from db.utils import build_engine_from_dsn, get_db

    database = get_db(lambda: build_engine_from_dsn(DB_DSN, timeout=DB_CONNECT_TIMEOUT_SECONDS))
    store = SqlCatalogStore(database)
    store.ensure_tables()
    return store


def _default_options(options: Mapping[str, Any]) -> dict[str, Any]:
    from config import SYNC_DB_BATCH_PAUSE, SYNC_DB_BATCH_SIZE, SYNC_WORKERS

    merged: dict[str, Any] = {
        "db_batch_size": SYNC_DB_BATCH_SIZE,
        "db_batch_pause": SYNC_DB_BATCH_PAUSE,
        "workers": SYNC_WORKERS,
    }
    merged.update(options)
    return merged


def _resolve_spec(resource: str | ResourceSpec) -> ResourceSpec:
    return resource if isinstance(resource, ResourceSpec) else get_resource(resource)


def sync_resource(
    resource: str | ResourceSpec,
    filter_value: Any = None,
    page_size: int = IGDB_MAX_PAGE_SIZE,
    *,
    client: IGDBClient | None = None,
    store: CatalogStore | None = None,
    **options: Any,
) -> SyncResult:
    """Sync every record of ``resource``, optionally scoped by ``filter_value``.

    ``filter_value`` applies to the resource's own filter field (``id`` for
    reference data, ``platforms`` for games). Remaining keyword arguments
    are passed to :class:`SyncOrchestrator`.
    """

    spec = _resolve_spec(resource)
    options = _default_options(options)
    options.setdefault("filter_strategy", FilterStrategy.for_resource(spec, filter_value))
    orchestrator = SyncOrchestrator(
        spec,
        client or build_default_client(),
        store or build_default_store(),
        page_size=page_size,
        **options,
    )
    return orchestrator.run()


def sync_resource_by_association_key(
    resource: str | ResourceSpec,
    association_kind: str,
    association_value: Any,
    page_size: int = IGDB_MAX_PAGE_SIZE,
    *,
    association_id: Any = None,
    client: IGDBClient | None = None,
    store: CatalogStore | None = None,
    **options: Any,
) -> SyncResult:
    """Sync the records of ``resource`` linked to one association.

    Every stored row gets the association column for ``association_kind``
    set to ``association_id`` (``association_value`` when omitted),
    replacing any association it had before.
    """

    derived = sorted({"filter_strategy", "association"} & options.keys())
    if derived:
        raise TypeError(
            f"{', '.join(derived)} cannot be passed to an association sync; "
            "they are derived from association_kind and association_value"
        )
    spec = _resolve_spec(resource)
    key = spec.association(association_kind)
    options = _default_options(options)
    stored_value = association_value if association_id is None else association_id
    orchestrator = SyncOrchestrator(
        spec,
        client or build_default_client(),
        store or build_default_store(),
        page_size=page_size,
        filter_strategy=FilterStrategy(key.filter_field, association_value),
        association=(key.column, stored_value),
        **options,
    )
    return orchestrator.run()


def sync_media_for_games(
    resource: str | ResourceSpec,
    store: SqlCatalogStore,
    *,
    client: IGDBClient | None = None,
    association_kind: str | None = None,
    association_value: Any = None,
    chunk_size: int = IGDB_MAX_PAGE_SIZE,
    **options: Any,
) -> SyncResult:
    """Fetch media records referenced by stored games but not yet stored.

    With ``association_kind`` only games linked to ``association_value``
    are scanned for media ids.
    """

    spec = _resolve_spec(resource)
    if spec.media_source is None:
        raise ValueError(f"{spec.name} is not a media resource")

    association = None
    if association_kind is not None:
        source = get_resource(spec.media_source[0])
        association = (source.association(association_kind).column, association_value)

    referenced = store.collect_media_ids(spec, association=association)
    existing = store.existing_external_ids(spec, referenced)
    pending = [media_id for media_id in referenced if media_id not in existing]
    logger.info(
        "%d %s referenced by stored games, %d already stored, %d to fetch",
        len(referenced),
        spec.name,
        len(existing),
        len(pending),
    )
    if not pending:
        return SyncResult(spec.name)

    client = client or build_default_client()
    options = _default_options(options)
    chunk_size = resolve_igdb_page_size(chunk_size)
    results: list[SyncResult] = []
    for chunk in _chunked(pending, chunk_size):
        orchestrator = SyncOrchestrator(
            spec,
            client,
            store,
            page_size=IGDB_MAX_PAGE_SIZE,
            filter_strategy=FilterStrategy("id", chunk),
            **options,
        )
        try:
            results.append(orchestrator.run())
        except SyncCancelled as exc:
            results.append(exc.result)
            raise SyncCancelled(SyncResult.merge(spec.name, results), exc.checkpoint) from exc
        except TransportError as exc:
            if exc.result is not None:
                exc.result = SyncResult.merge(spec.name, [*results, exc.result])
            raise
    return SyncResult.merge(spec.name, results)


__all__ = [
    "FilterStrategy",
    "SyncCheckpoint",
    "SyncCursor",
    "SyncOrchestrator",
    "SyncResult",
    "SyncState",
    "build_default_client",
    "build_default_store",
    "sync_media_for_games",
    "sync_resource",
    "sync_resource_by_association_key",
]
