from datetime import UTC, datetime
from pathlib import Path

import pytest
import yaml

from featurerun.state import (
    FeatureState,
    LedgerError,
    LedgerNotFoundError,
    LedgerSerializationError,
    find_feature,
    load_state,
    next_feature_id,
    normalize_slug,
    save_state,
)
from featurerun.state.ledger import STATE_FILE_NAME


def test_load_missing_ledger_raises_not_found(tmp_path: Path) -> None:
    with pytest.raises(LedgerNotFoundError):
        load_state(tmp_path / "0001_missing")


def test_load_malformed_yaml_raises_serialization_error(tmp_path: Path) -> None:
    (tmp_path / STATE_FILE_NAME).write_text("feature: [unclosed\n", encoding="utf-8")
    with pytest.raises(LedgerSerializationError):
        load_state(tmp_path)


def test_load_document_missing_fields_raises_serialization_error(tmp_path: Path) -> None:
    (tmp_path / STATE_FILE_NAME).write_text("status: planned\n", encoding="utf-8")
    with pytest.raises(LedgerSerializationError):
        load_state(tmp_path)


def test_load_non_mapping_raises_serialization_error(tmp_path: Path) -> None:
    (tmp_path / STATE_FILE_NAME).write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(LedgerSerializationError):
        load_state(tmp_path)


def test_save_then_load_round_trips(tmp_path: Path) -> None:
    state = FeatureState.new("0001", "demo")
    state.ensure_phases(["observe", "build"])
    feature_dir = tmp_path / state.feature.dir_name

    path = save_state(state, feature_dir)

    assert path == feature_dir / STATE_FILE_NAME
    assert load_state(feature_dir) == state
    assert sorted(item.name for item in feature_dir.iterdir()) == [STATE_FILE_NAME]


def test_saved_document_is_camel_case_yaml(tmp_path: Path) -> None:
    state = FeatureState.new("0002", "demo")
    save_state(state, tmp_path)

    document = yaml.safe_load((tmp_path / STATE_FILE_NAME).read_text(encoding="utf-8"))

    assert document["feature"]["id"] == "0002"
    assert "createdAt" in document["feature"]
    assert document["currentPhase"] == 0
    assert document["totalStats"] == {
        "turns": 0,
        "inputTokens": 0,
        "outputTokens": 0,
        "costUsd": 0.0,
    }


def test_unquoted_timestamps_are_accepted(tmp_path: Path) -> None:
    state = FeatureState.new("0001", "demo")
    payload = state.to_dict()
    payload["feature"]["createdAt"] = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    (tmp_path / STATE_FILE_NAME).write_text(
        yaml.safe_dump(payload, sort_keys=False), encoding="utf-8"
    )

    loaded = load_state(tmp_path)

    assert loaded.feature.created_at == "2024-05-01T12:00:00+00:00"


def test_next_feature_id(tmp_path: Path) -> None:
    features_dir = tmp_path / "features"
    assert next_feature_id(features_dir) == "0001"

    features_dir.mkdir()
    assert next_feature_id(features_dir) == "0001"

    (features_dir / "0001_first").mkdir()
    (features_dir / "0003_third").mkdir()
    (features_dir / "abc_broken").mkdir()
    (features_dir / "0009_file.txt").write_text("not a feature", encoding="utf-8")

    assert next_feature_id(features_dir) == "0004"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("User Auth", "user-auth"),
        ("  add__OAuth2 support!! ", "add-oauth2-support"),
        ("already-fine", "already-fine"),
    ],
)
def test_normalize_slug(raw: str, expected: str) -> None:
    assert normalize_slug(raw) == expected


def test_normalize_slug_rejects_empty() -> None:
    with pytest.raises(LedgerError):
        normalize_slug("!!!")


def test_find_feature_by_exact_suffix_and_prefix(tmp_path: Path) -> None:
    for name in ("0001_user-auth", "0002_billing", "0012_auth"):
        (tmp_path / name).mkdir()

    assert find_feature(tmp_path, "0002_billing").name == "0002_billing"
    assert find_feature(tmp_path, "billing").name == "0002_billing"
    assert find_feature(tmp_path, "auth").name == "0012_auth"
    assert find_feature(tmp_path, "0001").name == "0001_user-auth"

    with pytest.raises(LedgerNotFoundError):
        find_feature(tmp_path, "missing")


def test_find_feature_without_directory(tmp_path: Path) -> None:
    with pytest.raises(LedgerNotFoundError):
        find_feature(tmp_path / "features", "anything")
