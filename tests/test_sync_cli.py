import json

import pytest

from catalog_sync.engine import SyncCheckpoint, SyncResult
from catalog_sync.errors import SyncCancelled, TransportError
from scripts import sync_catalog
from tests.sync_helpers import FakeIGDB, make_games


@pytest.fixture
def cli_env(monkeypatch, catalog_store):
    client = FakeIGDB({"games": make_games(12, platforms=[6])})
    monkeypatch.setattr(sync_catalog, "validate_igdb_credentials", lambda: True)
    monkeypatch.setattr(sync_catalog, "build_default_client", lambda: client)
    monkeypatch.setattr(sync_catalog, "build_default_store", lambda: catalog_store)
    monkeypatch.setattr(sync_catalog, "_install_interrupt_handler", lambda event: None)
    return client


def test_platform_sync_prints_summary(cli_env, catalog_store, capsys):
    exit_code = sync_catalog.main(["games", "--platform", "6", "--association-id", "2", "--page-size", "5"])

    assert exit_code == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["new_count"] == 12
    assert cli_env.request_count == 3
    assert catalog_store.count_by_association("games", 2, association_kind="platform") == 12


def test_resume_offset_starts_mid_endpoint(cli_env, capsys):
    exit_code = sync_catalog.main(["games", "--platform", "6", "--page-size", "5", "--resume-offset", "10"])

    assert exit_code == 0
    assert "offset 10;" in cli_env.queries[0][1]
    assert json.loads(capsys.readouterr().out)["total_processed"] == 2


def test_platform_flag_is_rejected_for_other_resources(cli_env):
    with pytest.raises(SystemExit):
        sync_catalog.main(["genres", "--platform", "6"])


@pytest.mark.parametrize("scope_flag", ["--platform", "--platform-version"])
def test_filter_value_cannot_be_combined_with_a_platform_scope(cli_env, capsys, scope_flag):
    with pytest.raises(SystemExit) as excinfo:
        sync_catalog.main(["games", scope_flag, "6", "--filter-value", "48"])

    assert excinfo.value.code == 2
    assert "not allowed with argument" in capsys.readouterr().err
    assert cli_env.request_count == 0


def test_missing_credentials_exit_code(monkeypatch):
    monkeypatch.setattr(sync_catalog, "validate_igdb_credentials", lambda: False)

    assert sync_catalog.main(["genres"]) == 2


def test_transport_error_exit_code(cli_env):
    cli_env.errors[1] = TransportError(500, "boom")

    assert sync_catalog.main(["games"]) == 1


def test_failed_records_exit_code(cli_env, catalog_store, monkeypatch):
    original_insert = catalog_store.insert

    def flaky_insert(resource, draft):
        if draft.external_id == 3:
            raise RuntimeError("locked")
        return original_insert(resource, draft)

    monkeypatch.setattr(catalog_store, "insert", flaky_insert)

    assert sync_catalog.main(["games"]) == 3


def test_cancel_exit_code_prints_checkpoint(cli_env, monkeypatch, capsys):
    def cancelled_run(args, **kwargs):
        raise SyncCancelled(SyncResult("games", 500, 500), SyncCheckpoint("games", 6, 500))

    monkeypatch.setattr(sync_catalog, "run", cancelled_run)

    assert sync_catalog.main(["games", "--platform", "6"]) == 130
    summary = json.loads(capsys.readouterr().out)
    assert summary["status"] == "cancelled"
    assert summary["checkpoint"]["offset"] == 500
