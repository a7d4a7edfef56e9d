"""
Settings store: single-key writes, seeding and ordered write sequences.
"""

import threading

import pytest

from panelcore.models.setting import SettingKey
from panelcore.services.errors import NotFoundError, PartialApplyError, StoreError
from panelcore.services.settings_store import apply_sequence, init_default_settings


def test_set_then_get(store) -> None:
    store.set(SettingKey.PANEL_NAME, "Edge-01")
    assert store.get("PanelName") == "Edge-01"


def test_get_missing_key(store) -> None:
    with pytest.raises(NotFoundError):
        store.get("NoSuchKey")
    assert store.get_or_default("NoSuchKey", "fallback") == "fallback"


def test_set_same_value_twice_is_idempotent(store) -> None:
    store.set("Theme", "dark")
    before = store.all()
    store.set("Theme", "dark")
    assert store.all() == before
    assert store.get("Theme") == "dark"


def test_get_many_omits_missing(store) -> None:
    store.set("Language", "en")
    values = store.get_many([SettingKey.LANGUAGE, SettingKey.THEME])
    assert values == {"Language": "en"}


def test_seed_keeps_existing_values(store, cfg) -> None:
    store.set(SettingKey.SERVER_PORT, "9999")
    created = init_default_settings(store, cfg, password_hash="hash")
    assert "ServerPort" not in created
    assert store.get("ServerPort") == "9999"
    assert store.get("Password") == "hash"
    assert store.get("MFAStatus") == "disable"

    assert init_default_settings(store, cfg) == []


def test_apply_sequence_reports_partial_commit(store, fail_writes) -> None:
    fail_writes(store, "B")
    with pytest.raises(PartialApplyError) as exc_info:
        apply_sequence(store, [("A", "1"), ("B", "2"), ("C", "3")], operation="test")

    err = exc_info.value
    assert err.committed == 1
    assert err.total == 3
    assert err.committed_keys == ["A"]
    assert err.failed_key == "B"
    assert store.get("A") == "1"
    assert store.get_many(["B", "C"]) == {}


def test_apply_sequence_first_write_failure_is_store_error(store, fail_writes) -> None:
    fail_writes(store, "A")
    with pytest.raises(StoreError):
        apply_sequence(store, [("A", "1"), ("B", "2")])
    assert store.all() == {}


def test_concurrent_writes_to_one_key(store) -> None:
    errors = []

    def writer(n: int) -> None:
        try:
            for i in range(20):
                store.set("FontSize", f"{n}-{i}")
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert store.get("FontSize") in {f"{n}-19" for n in range(8)}
