from pathlib import Path

import pytest

from featurerun.config import FeatureRunConfig, load_config
from featurerun.state import FeatureStatus, FeatureStore, LedgerError, load_state


def _store(tmp_path: Path) -> FeatureStore:
    store = FeatureStore.for_repo(tmp_path)
    store.initialize()
    return store


def test_initialize_creates_workspace_and_config(tmp_path: Path) -> None:
    store = FeatureStore.for_repo(tmp_path)
    assert not store.initialized

    store.initialize()

    assert store.root == (tmp_path / ".featurerun").resolve()
    assert store.features_dir.is_dir()
    assert load_config(store.config_path) == FeatureRunConfig.default()


def test_initialize_twice_requires_force(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(LedgerError):
        store.initialize()
    store.initialize(force=True)


def test_uninitialized_store_refuses_features(tmp_path: Path) -> None:
    store = FeatureStore.for_repo(tmp_path)
    with pytest.raises(LedgerError):
        store.create_feature("demo")


def test_create_feature_writes_ledger_and_templates(tmp_path: Path) -> None:
    store = _store(tmp_path)

    state = store.create_feature("User Auth", "Sign users in.")

    feature_dir = store.features_dir / "0001_user-auth"
    assert state.feature.dir_name == "0001_user-auth"
    assert state.status is FeatureStatus.PLANNED
    assert load_state(feature_dir) == state
    assert (feature_dir / "docs").is_dir()
    design = (feature_dir / "specs" / "design.md").read_text(encoding="utf-8")
    assert "# Feature: user-auth" in design
    assert "Sign users in." in design
    assert (feature_dir / "specs" / "verification.md").is_file()


def test_feature_ids_increase(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.create_feature("one")
    second = store.create_feature("two")
    assert (first.feature.id, second.feature.id) == ("0001", "0002")


def test_list_and_summary_skip_broken_entries(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.create_feature("one")
    store.create_feature("two")
    first.start_execution()
    store.save(first)
    (store.features_dir / "0003_broken").mkdir()

    features = store.list_features()

    assert [name for name, _ in features] == ["0001_one", "0002_two"]
    assert store.summary() == {
        "total": 2,
        "planned": 1,
        "inProgress": 1,
        "completed": 0,
        "failed": 0,
    }


def test_load_by_slug(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.create_feature("billing")
    assert store.load("billing").feature.id == "0001"
    assert store.find("0001") == store.features_dir / "0001_billing"
