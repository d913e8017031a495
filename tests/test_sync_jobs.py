import threading

import pytest

import app as app_module
from catalog_sync.errors import AuthError
from tests.sync_helpers import FakeIGDB, make_games


def _noop_progress(*args, **kwargs):
    return None


def test_sync_job_reports_result_and_checkpoint(catalog_store):
    updates = []

    result = app_module._execute_sync_job(
        lambda *args, **kwargs: updates.append(kwargs),
        resource="games",
        association_kind="platform",
        association_value=6,
        association_id=1,
        page_size=10,
        client=FakeIGDB({"games": make_games(15)}),
        store=catalog_store,
    )

    assert result["status"] == "ok"
    assert result["new_count"] == 15
    assert result["checkpoint"] == {"resource": "games", "filter_value": 6, "offset": 20}
    assert catalog_store.count_by_association("games", 1, association_kind="platform") == 15
    assert any("checkpoint" in (update.get("data") or {}) for update in updates)
    assert updates[-1]["message"] == "Finished games sync."


def test_rejected_token_is_refreshed_once_and_sync_resumes(catalog_store):
    client = FakeIGDB({"games": make_games(20)}, errors={2: AuthError(401, "expired")})
    refreshed = []

    result = app_module._execute_sync_job(
        _noop_progress,
        resource="games",
        filter_value=6,
        page_size=10,
        client=client,
        store=catalog_store,
        refresh_token=lambda: refreshed.append(True),
    )

    assert refreshed == [True]
    assert "offset 10;" in client.queries[2][1]
    assert result["status"] == "ok"
    assert catalog_store.count("games") == 20


def test_token_retry_keeps_failures_from_pages_before_the_rejection(catalog_store):
    games = make_games(20)
    games[3]["name"] = None
    client = FakeIGDB({"games": games}, errors={2: AuthError(401, "expired")})

    result = app_module._execute_sync_job(
        _noop_progress,
        resource="games",
        filter_value=6,
        page_size=10,
        client=client,
        store=catalog_store,
        refresh_token=lambda: None,
    )

    assert result["status"] == "ok"
    assert result["failed_ids"] == [4]
    assert result["total_processed"] == 20
    assert result["new_count"] == 19
    assert catalog_store.count("games") == 19


def test_second_token_rejection_fails_the_job(catalog_store):
    client = FakeIGDB(
        {"games": make_games(5)},
        errors={1: AuthError(401), 2: AuthError(403)},
    )

    with pytest.raises(AuthError) as excinfo:
        app_module._execute_sync_job(
            _noop_progress,
            resource="games",
            client=client,
            store=catalog_store,
            refresh_token=lambda: None,
        )

    assert excinfo.value.status == 403


def test_cancelled_sync_returns_cancelled_status(catalog_store):
    event = threading.Event()
    event.set()

    result = app_module._execute_sync_job(
        _noop_progress,
        resource="genres",
        cancel_event=event,
        client=FakeIGDB({"genres": [{"id": 1, "name": "RPG"}]}),
        store=catalog_store,
    )

    assert result["status"] == "cancelled"
    assert result["total_processed"] == 0
    assert result["checkpoint"] == {"resource": "genres", "filter_value": None, "offset": 0}


def test_media_job_fetches_referenced_covers(catalog_store):
    app_module._execute_sync_job(
        _noop_progress,
        resource="games",
        client=FakeIGDB({"games": make_games(2)}),
        store=catalog_store,
    )
    covers = [{"id": 10_001, "game": 1, "image_id": "co1"}, {"id": 10_002, "game": 2, "image_id": "co2"}]

    result = app_module._execute_sync_job(
        _noop_progress,
        resource="covers",
        media=True,
        client=FakeIGDB({"covers": covers}),
        store=catalog_store,
    )

    assert result["new_count"] == 2
    assert catalog_store.count("covers") == 2
