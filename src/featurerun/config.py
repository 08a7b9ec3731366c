from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

PermissionMode = Literal["default", "acceptEdits", "plan", "bypassPermissions"]
PERMISSION_MODES = ("default", "acceptEdits", "plan", "bypassPermissions")


class ConfigError(ValueError):
    """Raised when a configuration file holds invalid values."""


@dataclass(slots=True)
class AgentConfig:
    binary: str = "claude"
    model: str = "claude-sonnet-4-5-20250929"
    max_turns: int = 50
    timeout_seconds: float = 300.0
    connect_timeout_seconds: float = 30.0
    permission_mode: PermissionMode = "default"


@dataclass(slots=True)
class OrchestratorConfig:
    summary_max_chars: int = 200
    design_doc: str = "specs/design.md"
    prompts_dir: str = "prompts"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str | None = None


@dataclass(slots=True)
class PhaseConfig:
    name: str
    description: str
    system_prompt: str | None = None
    tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    timeout_seconds: float | None = None

    def to_dict(self) -> dict:
        payload: dict = {"name": self.name, "description": self.description}
        if self.system_prompt:
            payload["system_prompt"] = self.system_prompt
        payload["tools"] = list(self.tools)
        payload["disallowed_tools"] = list(self.disallowed_tools)
        if self.timeout_seconds is not None:
            payload["timeout_seconds"] = self.timeout_seconds
        return payload


def default_phases() -> list[PhaseConfig]:
    return [
        PhaseConfig("observe", "Observe codebase and understand context"),
        PhaseConfig("build", "Build implementation"),
        PhaseConfig("test", "Write and run tests"),
        PhaseConfig("verification", "Verify implementation against requirements"),
        PhaseConfig("review", "Code review and refinement"),
        PhaseConfig("pr", "Create pull request"),
    ]


@dataclass(slots=True)
class FeatureRunConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    phases: list[PhaseConfig] = field(default_factory=default_phases)

    @classmethod
    def default(cls) -> FeatureRunConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FeatureRunConfig:
        try:
            config = cls(
                agent=AgentConfig(**data.get("agent", {})),
                orchestrator=OrchestratorConfig(**data.get("orchestrator", {})),
                logging=LoggingConfig(**data.get("logging", {})),
                phases=(
                    [PhaseConfig(**item) for item in data["phases"]]
                    if "phases" in data
                    else default_phases()
                ),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown or missing configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.agent.permission_mode not in PERMISSION_MODES:
            raise ConfigError(
                f"Unsupported permission mode '{self.agent.permission_mode}'. "
                f"Expected one of: {', '.join(PERMISSION_MODES)}"
            )
        if self.agent.timeout_seconds <= 0 or self.agent.connect_timeout_seconds <= 0:
            raise ConfigError("Agent timeouts must be positive.")
        if self.agent.connect_timeout_seconds >= self.agent.timeout_seconds:
            raise ConfigError("connect_timeout_seconds must be shorter than timeout_seconds.")
        if self.agent.max_turns <= 0:
            raise ConfigError("max_turns must be positive.")
        if self.orchestrator.summary_max_chars <= 0:
            raise ConfigError("summary_max_chars must be positive.")
        if not self.phases:
            raise ConfigError("At least one phase must be configured.")
        seen: set[str] = set()
        for phase in self.phases:
            if not phase.name.strip():
                raise ConfigError("Phase names must not be empty.")
            if phase.name in seen:
                raise ConfigError(f"Duplicate phase name: {phase.name}")
            if phase.timeout_seconds is not None and phase.timeout_seconds <= 0:
                raise ConfigError(f"Phase '{phase.name}' timeout_seconds must be positive.")
            seen.add(phase.name)

    def phase_names(self) -> list[str]:
        return [phase.name for phase in self.phases]

    def to_dict(self) -> dict:
        logging_section: dict = {"level": self.logging.level}
        if self.logging.file:
            logging_section["file"] = self.logging.file
        return {
            "agent": {
                "binary": self.agent.binary,
                "model": self.agent.model,
                "max_turns": self.agent.max_turns,
                "timeout_seconds": self.agent.timeout_seconds,
                "connect_timeout_seconds": self.agent.connect_timeout_seconds,
                "permission_mode": self.agent.permission_mode,
            },
            "orchestrator": {
                "summary_max_chars": self.orchestrator.summary_max_chars,
                "design_doc": self.orchestrator.design_doc,
                "prompts_dir": self.orchestrator.prompts_dir,
            },
            "logging": logging_section,
            "phases": [phase.to_dict() for phase in self.phases],
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FeatureRunConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("agent", "orchestrator", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for phase in data["phases"]:
        lines.append("[[phases]]")
        for key, value in phase.items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FeatureRunConfig:
    if not path.exists():
        return FeatureRunConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return FeatureRunConfig.from_dict(data)


def save_config(path: Path, config: FeatureRunConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
