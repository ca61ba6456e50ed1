from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

MergeStrategyName = Literal["squash", "preserve-history"]


@dataclass(slots=True)
class SessionsConfig:
    worktree_parent: str = ""
    branch_prefix: str = "session-"
    create_timeout_seconds: float = 120.0
    progress_interval_seconds: float = 10.0
    stale_after_days: int = 7
    copy_env_files: list[str] = field(default_factory=lambda: [".env", ".env.local"])


@dataclass(slots=True)
class ClaimsConfig:
    ttl_hours: float = 4.0


@dataclass(slots=True)
class MergeConfig:
    target_branch: str = ""
    default_strategy: MergeStrategyName = "squash"
    history_limit: int = 50


@dataclass(slots=True)
class AutomationsConfig:
    default_timeout_ms: int = 300000
    max_retries: int = 2
    retry_delay_seconds: float = 5.0
    kill_grace_seconds: float = 5.0
    loop_window_seconds: int = 300
    loop_threshold: int = 3
    history_limit: int = 100
    output_limit: int = 10000
    excerpt_limit: int = 1000


@dataclass(slots=True)
class StateConfig:
    directory: str = ".foreman"
    lock_timeout_seconds: float = 10.0


@dataclass(slots=True)
class ForemanConfig:
    sessions: SessionsConfig = field(default_factory=SessionsConfig)
    claims: ClaimsConfig = field(default_factory=ClaimsConfig)
    merge: MergeConfig = field(default_factory=MergeConfig)
    automations: AutomationsConfig = field(default_factory=AutomationsConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        return cls(
            sessions=SessionsConfig(**data.get("sessions", {})),
            claims=ClaimsConfig(**data.get("claims", {})),
            merge=MergeConfig(**data.get("merge", {})),
            automations=AutomationsConfig(**data.get("automations", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "sessions": asdict(self.sessions),
            "claims": asdict(self.claims),
            "merge": asdict(self.merge),
            "automations": asdict(self.automations),
            "state": asdict(self.state),
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if "." not in rendered:
            rendered += ".0"
        return rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["sessions", "claims", "merge", "automations", "state"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
