from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


def _resolve_project_root() -> Path:
    override = os.getenv("DEALDESK_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _resolve_database_path() -> Path:
    override = os.getenv("DEALDESK_DB", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return _resolve_project_root() / "data" / "dealdesk.db"


class Settings(BaseModel):
    project_root: Path = Field(default_factory=_resolve_project_root)
    data_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data")
    exports_dir: Path = Field(default_factory=lambda: _resolve_project_root() / "data" / "exports")

    database_path: Path = Field(default_factory=_resolve_database_path)

    llm_provider: str = Field(default_factory=lambda: os.getenv("LLM_PROVIDER", "anthropic"))
    llm_model: str = Field(default_factory=lambda: os.getenv("LLM_MODEL", ""))
    llm_max_tokens: int = 2048

    thesis_file: Path = Field(
        default_factory=lambda: _resolve_project_root() / "config" / "thesis.yaml"
    )

    # Alert thresholds (days)
    contact_decay_days: int = 30
    contact_critical_days: int = 60
    stale_deal_days: int = 14
    stale_deal_critical_days: int = 21

    api_host: str = "127.0.0.1"
    api_port: int = 8001

    def ensure_directories(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.exports_dir.mkdir(parents=True, exist_ok=True)

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data

    def load_thesis(self) -> dict[str, Any]:
        """Investor thesis overrides for evaluator prompts (``{}`` when absent)."""
        return self.load_yaml(self.thesis_file)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
