from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path

import yaml

from featurerun.state.models import FeatureState

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.yml"
FEATURE_ID_PATTERN = re.compile(r"[0-9]+")


class LedgerError(RuntimeError):
    """Raised when a feature ledger cannot be read or written."""


class LedgerNotFoundError(LedgerError):
    """Raised when no ledger (or feature directory) exists at the requested location."""


class LedgerSerializationError(LedgerError):
    """Raised when a ledger document is malformed or cannot be encoded."""


def state_path(feature_dir: Path) -> Path:
    return feature_dir / STATE_FILE_NAME


def load_state(feature_dir: Path) -> FeatureState:
    path = state_path(feature_dir)
    if not path.is_file():
        raise LedgerNotFoundError(f"Feature not found: {feature_dir}")

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise LedgerError(f"Failed to read {path}: {exc}") from exc

    try:
        payload = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise LedgerSerializationError(f"Malformed ledger {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise LedgerSerializationError(f"Malformed ledger {path}: expected a mapping")

    try:
        return FeatureState.from_dict(payload)
    except (KeyError, TypeError, ValueError) as exc:
        raise LedgerSerializationError(f"Malformed ledger {path}: {exc!r}") from exc


def dumps_state(state: FeatureState) -> str:
    try:
        return yaml.safe_dump(
            state.to_dict(),
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )
    except yaml.YAMLError as exc:
        raise LedgerSerializationError(f"Failed to encode ledger: {exc}") from exc


def save_state(state: FeatureState, feature_dir: Path) -> Path:
    """Write the ledger so that readers see either the old or the new document."""
    serialized = dumps_state(state)
    feature_dir.mkdir(parents=True, exist_ok=True)
    path = state_path(feature_dir)

    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=feature_dir,
        prefix=".state-",
        suffix=".yml.tmp",
        delete=False,
    ) as temp_file:
        temp_name = temp_file.name
        try:
            temp_file.write(serialized)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        except OSError:
            temp_file.close()
            os.unlink(temp_name)
            raise

    try:
        os.replace(temp_name, path)
    except OSError:
        try:
            os.unlink(temp_name)
        except OSError:
            pass
        raise
    logger.debug("Saved ledger %s (status=%s)", path, state.status.value)
    return path


def normalize_slug(text: str) -> str:
    normalized = "".join(char if char.isalnum() else "-" for char in text.lower())
    cleaned = "-".join(part for part in normalized.split("-") if part)
    if not cleaned:
        raise LedgerError(f"Invalid feature slug: '{text}'")
    return cleaned


def next_feature_id(features_dir: Path) -> str:
    if not features_dir.is_dir():
        return "0001"

    max_id = 0
    for entry in features_dir.iterdir():
        if not entry.is_dir():
            continue
        prefix = entry.name.split("_", maxsplit=1)[0]
        if not FEATURE_ID_PATTERN.fullmatch(prefix):
            continue
        max_id = max(max_id, int(prefix))
    return f"{max_id + 1:04d}"


def find_feature(features_dir: Path, ref: str) -> Path:
    """Resolve a feature directory by exact name, ``_<slug>`` suffix or ``<id>_`` prefix."""
    if not features_dir.is_dir():
        raise LedgerNotFoundError("No features found.")

    exact = features_dir / ref
    if ref and exact.is_dir():
        return exact

    candidates = sorted(entry for entry in features_dir.iterdir() if entry.is_dir())
    for entry in candidates:
        if entry.name.endswith(f"_{ref}"):
            return entry
    for entry in candidates:
        if entry.name.startswith(f"{ref}_"):
            return entry
    raise LedgerNotFoundError(f"Feature '{ref}' not found.")
