from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

from .models import ConfigMetadata
from .operations import OPERATIONS, UNSUPPORTED_TYPES

CONFIG_PATH = Path(__file__).resolve().parent / "defaults.yaml"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Environment variable -> config key
ENV_OVERRIDES: Dict[str, str] = {
    "PDFUTILITY_MAX_WORKERS": "dispatcher.max_workers",
    "PDFUTILITY_EXECUTION_TIMEOUT": "dispatcher.execution_timeout_seconds",
    "PDFUTILITY_REAPER_ENABLED": "reaper.enabled",
    "PDFUTILITY_REAPER_INTERVAL": "reaper.interval_seconds",
    "PDFUTILITY_STALE_AFTER": "reaper.stale_after_seconds",
    "PDFUTILITY_PENDING_AFTER": "reaper.pending_after_seconds",
    "PDFUTILITY_RETENTION": "reaper.retention_seconds",
    "PDFUTILITY_MAX_INPUTS": "limits.max_inputs",
    "PDFUTILITY_MAX_DOCUMENT_BYTES": "limits.max_document_bytes",
    "PDFUTILITY_DB_PATH": "database.path",
    "PDFUTILITY_STORAGE_PROVIDER": "storage.provider",
    "PDFUTILITY_STORAGE_ROOT": "storage.local_root",
    "S3_BUCKET_NAME": "storage.s3_bucket",
    "PDFUTILITY_S3_PREFIX": "storage.s3_prefix",
    "PDFUTILITY_LOG_LEVEL": "logging.level",
}

NOTES = {
    "input_refs": "Content references returned by POST /files; order matters for MERGE.",
    "SPLIT": "Extracts an inclusive 1-indexed page range; to_page defaults to the last page.",
    "cancel": "Cancelling a PROCESSING job is advisory; the worker stops at its next checkpoint.",
    "retryable": "Failed jobs with retryable=true failed for transient reasons and can be retried as-is.",
}


@dataclass
class DispatcherConfig:
    max_workers: int = 2
    execution_timeout_seconds: float = 300.0


@dataclass
class ReaperConfig:
    enabled: bool = True
    interval_seconds: float = 60.0
    stale_after_seconds: float = 900.0
    pending_after_seconds: float = 300.0
    retention_seconds: float = 86400.0
    purge_outputs: bool = True


@dataclass
class LimitsConfig:
    max_inputs: int = 20
    max_document_bytes: int = 100 * 1024 * 1024


@dataclass
class DatabaseConfig:
    path: str = "data/jobs.db"


@dataclass
class StorageConfig:
    provider: str = "local"
    local_root: str = "data/content"
    s3_bucket: str = ""
    s3_prefix: str = ""
    timeout_seconds: float = 30.0


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class ServiceConfig:
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    reaper: ReaperConfig = field(default_factory=ReaperConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    return OmegaConf.load(CONFIG_PATH)


def _env_config() -> DictConfig:
    dotlist = [
        f"{key}={os.environ[var]}"
        for var, key in ENV_OVERRIDES.items()
        if os.environ.get(var, "").strip()
    ]
    return OmegaConf.from_dotlist(dotlist)


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> DictConfig:
    """
    Build the effective service configuration.

    Precedence (lowest first): schema defaults, packaged defaults.yaml,
    environment variables (a local .env file is loaded first), ``overrides``.

    Raises:
        omegaconf.errors.ConfigKeyError: For keys the schema does not define
        omegaconf.errors.ValidationError: For values of the wrong type
    """
    load_dotenv()
    schema = OmegaConf.structured(ServiceConfig)
    merged = OmegaConf.merge(schema, _load_default_config(), _env_config(), OmegaConf.create(overrides or {}))
    return merged  # type: ignore[return-value]


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stdout,
    )


def build_config_metadata(settings: DictConfig) -> ConfigMetadata:
    defaults = OmegaConf.to_container(settings, resolve=True)
    return ConfigMetadata(
        defaults=defaults,  # type: ignore[arg-type]
        operations={
            job_type.value: operation.parameters_model.model_json_schema()
            for job_type, operation in OPERATIONS.items()
        },
        unsupported_operations=sorted(job_type.value for job_type in UNSUPPORTED_TYPES),
        notes=NOTES,
    )
