from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class StoreConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: str
    atomic_insert: bool = True
    busy_timeout_seconds: float = Field(default=5.0, ge=0.0)

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("db_path must not be empty")
        return normalized


def load_config(path: str | Path) -> StoreConfig:
    payload = _parse_payload(Path(path).read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Configuration root must be an object.")
    try:
        return StoreConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc


def _parse_payload(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return _parse_yaml(raw)


def _parse_yaml(raw: str) -> Any:
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ValueError(f"Configuration is neither JSON nor YAML: {exc}") from exc
