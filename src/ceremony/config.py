"""Coordinator configuration.

Values come from `config/coordinator_params.json` or from the process
environment (optionally seeded from a `.env` file). The environment keys
for upload tuning keep the names used by existing ceremony deployments:

    CONFIG_STREAM_CHUNK_SIZE_IN_MB
    CONFIG_PRESIGNED_URL_EXPIRATION_IN_SECONDS
    CONFIG_CEREMONY_BUCKET_POSTFIX

Everything else is read from CEREMONY_<FIELD_NAME_UPPERCASE>.
"""

from __future__ import annotations

import enum
import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv


DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "coordinator_params.json"

_LEGACY_ENV_KEYS = {
    "stream_chunk_size_mb": "CONFIG_STREAM_CHUNK_SIZE_IN_MB",
    "presigned_url_expiration_seconds": "CONFIG_PRESIGNED_URL_EXPIRATION_IN_SECONDS",
    "bucket_postfix": "CONFIG_CEREMONY_BUCKET_POSTFIX",
}


class RequeuePolicy(str, enum.Enum):
    """Where a contributor goes after a rejected verification."""
    BACK = "back"
    FRONT = "front"
    REMOVE = "remove"


@dataclass(frozen=True)
class CoordinatorConfig:
    stream_chunk_size_mb: int = 25
    presigned_url_expiration_seconds: int = 7200
    bucket_postfix: str = "-ph2-ceremony"
    max_outstanding_authorizations: int = 16
    storage_retry_attempts: int = 3
    storage_retry_base_delay_seconds: float = 0.5
    storage_retry_max_delay_seconds: float = 8.0
    conflict_retry_attempts: int = 5
    conflict_retry_base_delay_seconds: float = 0.05
    rejected_requeue_policy: RequeuePolicy = RequeuePolicy.BACK
    verification_carve_out_seconds: int = 0
    dynamic_min_window_seconds: int = 300
    seconds_per_million_constraints: int = 600

    def __post_init__(self) -> None:
        if self.stream_chunk_size_mb <= 0:
            raise ValueError("stream_chunk_size_mb must be positive")
        if self.presigned_url_expiration_seconds <= 0:
            raise ValueError("presigned_url_expiration_seconds must be positive")
        if self.max_outstanding_authorizations <= 0:
            raise ValueError("max_outstanding_authorizations must be positive")
        if self.storage_retry_attempts < 1 or self.conflict_retry_attempts < 1:
            raise ValueError("retry attempts must be at least 1")
        if self.verification_carve_out_seconds < 0:
            raise ValueError("verification_carve_out_seconds must be non-negative")
        if not isinstance(self.rejected_requeue_policy, RequeuePolicy):
            object.__setattr__(
                self, "rejected_requeue_policy", RequeuePolicy(self.rejected_requeue_policy)
            )

    @property
    def chunk_size_bytes(self) -> int:
        return self.stream_chunk_size_mb * 1024 * 1024

    @classmethod
    def from_mapping(cls, values: Dict[str, Any]) -> CoordinatorConfig:
        """Build from a flat mapping, coercing to each field's type."""
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in values or values[f.name] is None:
                continue
            raw = values[f.name]
            default = f.default
            if isinstance(default, RequeuePolicy):
                kwargs[f.name] = RequeuePolicy(str(raw).lower())
            elif isinstance(default, bool):
                kwargs[f.name] = str(raw).lower() in ("1", "true", "yes")
            elif isinstance(default, int):
                kwargs[f.name] = int(raw)
            elif isinstance(default, float):
                kwargs[f.name] = float(raw)
            else:
                kwargs[f.name] = str(raw)
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: Path = DEFAULT_CONFIG_PATH) -> CoordinatorConfig:
        """Load from a sectioned JSON params file."""
        params = json.loads(path.read_text(encoding="utf-8"))
        flat: Dict[str, Any] = {}
        for section in params.values():
            if isinstance(section, dict):
                flat.update(section)
        return cls.from_mapping(flat)

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> CoordinatorConfig:
        """Load from the environment, seeding it from a .env file first.

        Variables already set in the process environment win over the
        .env file.
        """
        if env_file is not None:
            load_dotenv(env_file)
        else:
            load_dotenv()
        values: Dict[str, Any] = {}
        for f in fields(cls):
            key = _LEGACY_ENV_KEYS.get(f.name, f"CEREMONY_{f.name.upper()}")
            value = os.getenv(key)
            if value is not None and value != "":
                values[f.name] = value
        return cls.from_mapping(values)
