import os
import logging
import logging.config
from pathlib import Path
from threading import Event, Lock
from typing import Any, Callable, Mapping

from flask import Flask

from config import (
    APP_SECRET_KEY,
    DB_CONNECT_TIMEOUT_SECONDS,
    DB_DSN,
    IGDB_BATCH_SIZE,
    IGDB_CLIENT_ID,
    IGDB_CLIENT_SECRET,
    IGDB_REQUESTS_PER_SECOND,
    IGDB_USER_AGENT,
    LOG_FILE,
    validate_igdb_credentials,
)
from catalog_sync.engine import (
    SyncCheckpoint,
    SyncResult,
    sync_media_for_games,
    sync_resource,
    sync_resource_by_association_key,
)
from catalog_sync.errors import AuthError, SyncCancelled
from catalog_sync.resources import get_resource
from catalog_sync.store import SqlCatalogStore
from db import utils as db_utils
from igdb.client import IGDBClient, TwitchTokenSource
from igdb.rate_limit import RateLimiter
from jobs import manager as jobs_manager
from routes import sync as routes_sync

logger = logging.getLogger(__name__)


def _determine_log_level(flask_app: Flask) -> int:
    if flask_app.debug:
        return logging.DEBUG
    env_value = str(flask_app.config.get('ENV', '')).lower()
    if env_value == 'development':
        return logging.DEBUG
    if os.environ.get('FLASK_DEBUG', '').lower() in {'1', 'true', 'yes', 'on'}:
        return logging.DEBUG
    return logging.INFO


def _configure_logging(flask_app: Flask) -> None:
    log_level = _determine_log_level(flask_app)
    log_path = Path(LOG_FILE)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass

    for handler in list(flask_app.logger.handlers):
        flask_app.logger.removeHandler(handler)

    logging.config.dictConfig(
        {
            'version': 1,
            'disable_existing_loggers': False,
            'formatters': {
                'standard': {
                    'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
                    'datefmt': '%Y-%m-%d %H:%M:%S',
                }
            },
            'handlers': {
                'console': {
                    'class': 'logging.StreamHandler',
                    'formatter': 'standard',
                    'level': log_level,
                    'stream': 'ext://sys.stdout',
                },
                'file': {
                    'class': 'logging.handlers.RotatingFileHandler',
                    'formatter': 'standard',
                    'level': logging.DEBUG,
                    'filename': os.fspath(log_path),
                    'maxBytes': 5 * 1024 * 1024,
                    'backupCount': 5,
                    'encoding': 'utf-8',
                },
            },
            'root': {
                'level': log_level,
                'handlers': ['console', 'file'],
            },
        }
    )

    flask_app.logger = logging.getLogger(flask_app.import_name)
    flask_app.logger.setLevel(log_level)
    logger.setLevel(log_level)


_services_lock = Lock()
_token_source: TwitchTokenSource | None = None
_igdb_client: IGDBClient | None = None
_catalog_store: SqlCatalogStore | None = None


def _db_connection_factory() -> db_utils.DatabaseEngine:
    return db_utils.build_engine_from_dsn(DB_DSN, timeout=DB_CONNECT_TIMEOUT_SECONDS)


def get_igdb_client() -> IGDBClient:
    """Return the process-wide IGDB client sharing one rate limiter."""

    global _token_source, _igdb_client
    with _services_lock:
        if _igdb_client is None:
            _token_source = TwitchTokenSource(IGDB_CLIENT_ID, IGDB_CLIENT_SECRET)
            _igdb_client = IGDBClient(
                client_id=IGDB_CLIENT_ID,
                token_source=_token_source,
                rate_limiter=RateLimiter.per_second(IGDB_REQUESTS_PER_SECOND),
                user_agent=IGDB_USER_AGENT,
            )
        return _igdb_client


def get_catalog_store() -> SqlCatalogStore:
    """Return the catalog store, creating its tables on first use."""

    global _catalog_store
    with _services_lock:
        if _catalog_store is None:
            database = db_utils.get_db(_db_connection_factory)
            store = SqlCatalogStore(database)
            store.ensure_tables()
            _catalog_store = store
        return _catalog_store


def _clear_cached_token() -> None:
    if _token_source is not None:
        _token_source.clear()


def _execute_sync_job(
    update_progress: Callable[..., None],
    *,
    resource: str,
    cancel_event: Event | None = None,
    filter_value: Any = None,
    association_kind: str | None = None,
    association_value: Any = None,
    association_id: Any = None,
    page_size: int | None = None,
    checkpoint: Mapping[str, Any] | None = None,
    media: bool = False,
    client: IGDBClient | None = None,
    store: SqlCatalogStore | None = None,
    refresh_token: Callable[[], None] | None = None,
) -> dict[str, Any]:
    """Background job helper that runs one catalog sync.

    A rejected token is refreshed once and the sync restarted from the last
    emitted checkpoint; a second rejection fails the job. Counts and
    ``failed_ids`` of the interrupted attempt are merged into the result.
    """

    spec = get_resource(resource)
    client = client or get_igdb_client()
    store = store or get_catalog_store()
    refresh_token = refresh_token or _clear_cached_token
    size = page_size or IGDB_BATCH_SIZE
    last_checkpoint = SyncCheckpoint.from_dict(checkpoint) if checkpoint else None

    update_progress(message=f'Preparing {spec.name} sync', data={'resource': spec.name})

    def _remember(checkpoint_value: SyncCheckpoint) -> None:
        nonlocal last_checkpoint
        last_checkpoint = checkpoint_value
        update_progress(data={'checkpoint': checkpoint_value.to_dict()})

    def _run() -> SyncResult:
        options: dict[str, Any] = {
            'client': client,
            'cancel_event': cancel_event,
            'progress_callback': update_progress,
        }
        if media:
            return sync_media_for_games(
                spec,
                store,
                association_kind=association_kind,
                association_value=association_value,
                **options,
            )
        options['on_checkpoint'] = _remember
        if last_checkpoint is not None:
            options['checkpoint'] = last_checkpoint
        if association_kind:
            return sync_resource_by_association_key(
                spec,
                association_kind,
                association_value,
                size,
                association_id=association_id,
                store=store,
                **options,
            )
        return sync_resource(spec, filter_value, size, store=store, **options)

    partial: list[SyncResult] = []
    try:
        try:
            result = _run()
        except AuthError as exc:
            logger.warning('IGDB rejected the token during %s sync (%s); retrying once', spec.name, exc.status)
            if exc.result is not None:
                partial.append(exc.result)
            refresh_token()
            result = _run()
    except SyncCancelled as exc:
        update_progress(message=f'Cancelled {spec.name} sync')
        cancelled = SyncResult.merge(spec.name, [*partial, exc.result])
        return {
            'status': jobs_manager.JOB_STATUS_CANCELLED,
            **cancelled.to_dict(),
            'checkpoint': exc.checkpoint.to_dict() if exc.checkpoint else None,
        }

    if partial:
        result = SyncResult.merge(spec.name, [*partial, result])

    update_progress(
        current=result.total_processed,
        total=result.total_processed,
        message=f'Finished {spec.name} sync.',
    )
    return {
        'status': 'ok',
        **result.to_dict(),
        'checkpoint': last_checkpoint.to_dict() if last_checkpoint else None,
    }


def _run_sync_inline(**job_kwargs: Any) -> dict[str, Any]:
    return _execute_sync_job(lambda *args, **kwargs: None, **job_kwargs)


_blueprints_configured = False


def configure_blueprints(flask_app: Flask) -> None:
    global _blueprints_configured
    if _blueprints_configured:
        return

    routes_sync.configure({
        'job_manager': jobs_manager.get_job_manager(),
        'get_store': get_catalog_store,
        'get_client': get_igdb_client,
        'run_sync': _run_sync_inline,
        'validate_igdb_credentials': validate_igdb_credentials,
        'IGDB_BATCH_SIZE': IGDB_BATCH_SIZE,
    })

    if 'sync' not in flask_app.blueprints:
        flask_app.register_blueprint(routes_sync.sync_blueprint)

    _blueprints_configured = True


app = Flask(__name__)
app.secret_key = APP_SECRET_KEY

_configure_logging(app)

from web.app_factory import create_app

app = create_app(app, configure_blueprints=configure_blueprints)


if __name__ == '__main__':
    app.run(debug=True)
