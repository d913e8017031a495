import pytest

from catalog_sync.errors import PersistenceError
from catalog_sync.resources import get_resource
from catalog_sync.transform import RecordTransformer
from catalog_sync.upsert import UpsertOutcome, Upserter
from helpers import deserialize_ids


def _draft(record, association=None, resource="games"):
    return RecordTransformer(get_resource(resource)).transform(record, association)


def test_first_upsert_creates_then_updates(catalog_store):
    upserter = Upserter(catalog_store, get_resource("games"))
    record = {"id": 10, "name": "Doom", "summary": "Demons", "genres": [5]}

    assert upserter.upsert(_draft(record)) is UpsertOutcome.CREATED
    assert upserter.upsert(_draft(record)) is UpsertOutcome.UPDATED

    assert catalog_store.count("games") == 1
    row = catalog_store.find_by_external_id("games", 10)
    assert row["name"] == "Doom"
    assert deserialize_ids(row["genres"]) == [5]
    assert row["last_synced"] is not None


def test_update_overwrites_every_field(catalog_store):
    upserter = Upserter(catalog_store, get_resource("games"))
    upserter.upsert(_draft({"id": 10, "name": "Doom", "summary": "Demons", "rating": 91.5}))

    upserter.upsert(_draft({"id": 10, "name": "DOOM"}))

    row = catalog_store.find_by_external_id("games", 10)
    assert row["name"] == "DOOM"
    assert row["summary"] is None
    assert row["rating"] is None


def test_association_is_overwritten_on_update(catalog_store):
    upserter = Upserter(catalog_store, get_resource("games"))
    upserter.upsert(_draft({"id": 10, "name": "Doom"}, ("platform_id", 6)))

    upserter.upsert(_draft({"id": 10, "name": "Doom"}, ("platform_id", 48)))

    row = catalog_store.find_by_external_id("games", 10)
    assert row["platform_id"] == 48
    assert catalog_store.count_by_association("games", 6) == 0
    assert catalog_store.count_by_association("games", 48) == 1


def test_update_without_association_keeps_existing_link(catalog_store):
    upserter = Upserter(catalog_store, get_resource("games"))
    upserter.upsert(_draft({"id": 10, "name": "Doom"}, ("platform_version_id", 3)))

    upserter.upsert(_draft({"id": 10, "name": "Doom"}))

    assert catalog_store.count_by_association(
        "games", 3, association_kind="platform_version"
    ) == 1


def test_store_failures_become_persistence_errors(catalog_store, monkeypatch):
    upserter = Upserter(catalog_store, get_resource("games"))

    def broken_insert(resource, draft):
        raise RuntimeError("disk full")

    monkeypatch.setattr(catalog_store, "insert", broken_insert)

    with pytest.raises(PersistenceError) as excinfo:
        upserter.upsert(_draft({"id": 77, "name": "Quake"}))

    assert excinfo.value.external_id == 77
    assert excinfo.value.resource == "games"
    assert "disk full" in str(excinfo.value)


def test_collect_media_ids_reads_scalar_and_list_columns(catalog_store):
    upserter = Upserter(catalog_store, get_resource("games"))
    upserter.upsert(_draft({"id": 1, "name": "A", "cover": 500, "screenshots": [7, 8]}, ("platform_id", 6)))
    upserter.upsert(_draft({"id": 2, "name": "B", "cover": 501, "screenshots": [8, 9]}, ("platform_id", 48)))

    assert catalog_store.collect_media_ids("covers") == [500, 501]
    assert catalog_store.collect_media_ids("screenshots") == [7, 8, 9]
    assert catalog_store.collect_media_ids(
        "screenshots", association=("platform_id", 48)
    ) == [8, 9]


def test_existing_external_ids(catalog_store):
    Upserter(catalog_store, get_resource("covers")).upsert(
        _draft({"id": 500, "game": 1, "image_id": "co1"}, resource="covers")
    )

    assert catalog_store.existing_external_ids("covers", [500, 501]) == {500}


def test_unknown_resource_is_rejected(catalog_store):
    with pytest.raises(ValueError):
        catalog_store.find_by_external_id("achievements", 1)
