from __future__ import annotations

import logging
from collections import Counter
from datetime import UTC, datetime
from pathlib import Path

from featurerun.config import FeatureRunConfig, save_config
from featurerun.state.ledger import (
    LedgerError,
    find_feature,
    load_state,
    next_feature_id,
    normalize_slug,
    save_state,
)
from featurerun.state.models import FeatureState, FeatureStatus

logger = logging.getLogger(__name__)

WORKSPACE_DIR_NAME = ".featurerun"
CONFIG_FILE_NAME = "config.toml"

DESIGN_TEMPLATE = """# Feature: {slug}

## Overview

{description}

## Requirements

- [ ] Add requirements

## Design

### Architecture

Describe the architecture.

### Implementation Plan

1. Add implementation steps

## Files to Modify

- List files to create or modify

## Testing Strategy

- Describe the testing approach

## Notes

- Created: {created}
"""

VERIFICATION_TEMPLATE = """# Verification Criteria: {slug}

## Acceptance Criteria

- [ ] Add acceptance criteria

## Test Cases

### Unit Tests

- [ ] Add unit test cases

### Integration Tests

- [ ] Add integration test cases
"""


class FeatureStore:
    """Feature directories and their ledgers under ``<repo>/.featurerun``."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.features_dir = self.root / "features"
        self.config_path = self.root / CONFIG_FILE_NAME

    @classmethod
    def for_repo(cls, repo_root: Path) -> FeatureStore:
        return cls(repo_root / WORKSPACE_DIR_NAME)

    @property
    def initialized(self) -> bool:
        return self.root.is_dir()

    def require_initialized(self) -> None:
        if not self.initialized:
            raise LedgerError("featurerun is not initialized. Run 'featurerun init' first.")

    def initialize(self, *, force: bool = False, config: FeatureRunConfig | None = None) -> None:
        if self.initialized and not force:
            raise LedgerError(
                "featurerun is already initialized in this repository. "
                "Use --force to reinitialize."
            )
        self.features_dir.mkdir(parents=True, exist_ok=True)
        save_config(self.config_path, config or FeatureRunConfig.default())
        logger.info("Initialized feature workspace at %s", self.root)

    def feature_dir(self, state: FeatureState) -> Path:
        return self.features_dir / state.feature.dir_name

    def create_feature(self, slug: str, description: str | None = None) -> FeatureState:
        self.require_initialized()
        normalized = normalize_slug(slug)
        feature_id = next_feature_id(self.features_dir)
        state = FeatureState.new(feature_id, normalized)
        feature_dir = self.feature_dir(state)
        if feature_dir.exists():
            raise LedgerError(f"Feature '{feature_dir.name}' already exists.")

        (feature_dir / "specs").mkdir(parents=True)
        (feature_dir / "docs").mkdir()
        created = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
        (feature_dir / "specs" / "design.md").write_text(
            DESIGN_TEMPLATE.format(
                slug=normalized,
                description=description or "Add a description.",
                created=created,
            ),
            encoding="utf-8",
        )
        (feature_dir / "specs" / "verification.md").write_text(
            VERIFICATION_TEMPLATE.format(slug=normalized),
            encoding="utf-8",
        )
        save_state(state, feature_dir)
        logger.info("Created feature %s", feature_dir.name)
        return state

    def find(self, ref: str) -> Path:
        self.require_initialized()
        return find_feature(self.features_dir, ref)

    def load(self, ref: str) -> FeatureState:
        return load_state(self.find(ref))

    def save(self, state: FeatureState) -> Path:
        return save_state(state, self.feature_dir(state))

    def list_features(self) -> list[tuple[str, FeatureState]]:
        self.require_initialized()
        if not self.features_dir.is_dir():
            return []
        features: list[tuple[str, FeatureState]] = []
        for entry in self.features_dir.iterdir():
            if not entry.is_dir():
                continue
            try:
                features.append((entry.name, load_state(entry)))
            except LedgerError as exc:
                logger.warning("Skipping %s: %s", entry.name, exc)
        features.sort(key=lambda item: item[1].feature.id)
        return features

    def summary(self) -> dict[str, int]:
        counts = Counter(state.status for _, state in self.list_features())
        payload = {"total": sum(counts.values())}
        for status in FeatureStatus:
            payload[status.value] = counts.get(status, 0)
        return payload
