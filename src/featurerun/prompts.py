from __future__ import annotations

import logging
import string
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_PHASE_PROMPT = """
Execute phase '{phase}' for feature '{feature_slug}'.

Description: {description}

Read the design spec at {design_doc} and implement accordingly.
""".strip()


class PromptError(RuntimeError):
    """Raised when a prompt cannot be produced for a phase."""


class TemplateNotFoundError(PromptError):
    pass


class RenderError(PromptError):
    pass


class PromptRenderer(ABC):
    @abstractmethod
    def render(self, template_name: str, context: dict[str, Any]) -> str:
        """Render the named template with ``context``."""


def _substitute(template: str, context: dict[str, Any], name: str) -> str:
    formatter = string.Formatter()
    try:
        return formatter.vformat(template, (), context)
    except (KeyError, IndexError) as exc:
        raise RenderError(f"Template '{name}' references unknown variable {exc}") from exc
    except ValueError as exc:
        raise RenderError(f"Template '{name}' is malformed: {exc}") from exc


class DefaultPromptRenderer(PromptRenderer):
    """Built-in instruction used for every phase without a template file."""

    def __init__(self, template: str = DEFAULT_PHASE_PROMPT) -> None:
        self.template = template

    def render(self, template_name: str, context: dict[str, Any]) -> str:
        return _substitute(self.template, context, template_name)


class TemplateDirRenderer(PromptRenderer):
    """Reads ``<template_dir>/<name>.md`` and fills ``{placeholders}`` from the context."""

    suffix = ".md"

    def __init__(self, template_dir: Path, fallback: PromptRenderer | None = None) -> None:
        self.template_dir = template_dir
        self.fallback = fallback

    def template_path(self, template_name: str) -> Path:
        return self.template_dir / f"{template_name}{self.suffix}"

    def list_templates(self) -> list[str]:
        if not self.template_dir.is_dir():
            return []
        return sorted(path.stem for path in self.template_dir.glob(f"*{self.suffix}"))

    def render(self, template_name: str, context: dict[str, Any]) -> str:
        path = self.template_path(template_name)
        try:
            template = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            if self.fallback is not None:
                logger.debug("No template %s, using fallback prompt", path)
                return self.fallback.render(template_name, context)
            raise TemplateNotFoundError(f"Template not found: {template_name}") from exc
        except OSError as exc:
            raise RenderError(f"Failed to read template {path}: {exc}") from exc
        return _substitute(template, context, template_name).strip()
