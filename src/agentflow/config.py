from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "echo"]
LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

DEFAULT_CONFIG_FILE = "agentflow.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    binary: str = "claude"
    # Empty means the worker's own default model.
    model: str = ""
    timeout_seconds: float = 1800.0


@dataclass(slots=True)
class WorkflowConfig:
    self_heal_max_attempts: int = 3


@dataclass(slots=True)
class StateConfig:
    root: str = ".agentflow"
    lock_timeout_seconds: float = 5.0


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevelName = "INFO"
    event_log: bool = True


@dataclass(slots=True)
class AgentflowConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> AgentflowConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> AgentflowConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
            },
            "backend": {
                "primary": self.backend.primary,
                "binary": self.backend.binary,
                "model": self.backend.model,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "workflow": {
                "self_heal_max_attempts": self.workflow.self_heal_max_attempts,
            },
            "state": {
                "root": self.state.root,
                "lock_timeout_seconds": self.state.lock_timeout_seconds,
            },
            "logging": {
                "level": self.logging.level,
                "event_log": self.logging.event_log,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: AgentflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("project", "backend", "workflow", "state", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> AgentflowConfig:
    if not path.exists():
        return AgentflowConfig.default()
    return AgentflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: AgentflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
