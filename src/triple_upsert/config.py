"""
Configuration for upsert batches.

Provides:
- Retry settings for commit conflicts
- Worker pool settings and error policy
- Dict / YAML round trip
- Configuration validation
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 25
DEFAULT_QUEUE_SIZE = 100


class ErrorPolicy(str, Enum):
    """What a batch does after an item fails."""
    BEST_EFFORT = "best_effort"  # Keep going, report every failure
    FAIL_FAST = "fail_fast"      # Cancel the rest after the first failure


class ConfigValidationError(Exception):
    """Configuration validation error."""
    pass


@dataclass
class RetryConfig:
    """Conflict retry settings. ``max_retries=None`` retries until cancelled."""
    max_retries: Optional[int] = None
    backoff_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "backoff_seconds": self.backoff_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        return cls(
            max_retries=data.get("max_retries"),
            backoff_seconds=data.get("backoff_seconds", 0.0),
        )


@dataclass
class UpsertConfig:
    """
    Settings for a batch run.

    Attributes:
        max_workers: Upper bound on concurrent workers
        queue_size: Capacity of the input queue between producer and workers
        error_policy: Fail fast or keep going after a failed item
        predicate_key: Predicate used as identity key for map operations
        retry: Conflict retry settings
    """
    max_workers: int = DEFAULT_MAX_WORKERS
    queue_size: int = DEFAULT_QUEUE_SIZE
    error_policy: ErrorPolicy = ErrorPolicy.BEST_EFFORT
    predicate_key: str = ""
    retry: RetryConfig = field(default_factory=RetryConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_workers": self.max_workers,
            "queue_size": self.queue_size,
            "error_policy": self.error_policy.value,
            "predicate_key": self.predicate_key,
            "retry": self.retry.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpsertConfig":
        policy_str = data.get("error_policy", ErrorPolicy.BEST_EFFORT.value)
        try:
            policy = ErrorPolicy(policy_str)
        except ValueError:
            raise ConfigValidationError(f"Invalid error_policy: {policy_str}")

        return cls(
            max_workers=data.get("max_workers", DEFAULT_MAX_WORKERS),
            queue_size=data.get("queue_size", DEFAULT_QUEUE_SIZE),
            error_policy=policy,
            predicate_key=data.get("predicate_key", ""),
            retry=RetryConfig.from_dict(data.get("retry", {})),
        )

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns list of error messages (empty if valid).
        """
        errors = []

        if self.max_workers < 1:
            errors.append("max_workers must be at least 1")

        if self.queue_size < 1:
            errors.append("queue_size must be at least 1")

        if self.retry.max_retries is not None and self.retry.max_retries < 0:
            errors.append("retry.max_retries cannot be negative")

        if self.retry.backoff_seconds < 0:
            errors.append("retry.backoff_seconds cannot be negative")

        return errors

    def validate_or_raise(self) -> None:
        """Validate configuration, raising on errors."""
        errors = self.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, source: Union[str, Path]) -> "UpsertConfig":
        """
        Load configuration from a YAML file or YAML text.

        A top-level ``upsert:`` section is used when present, so the
        settings can live in a larger application config file.
        """
        if isinstance(source, Path):
            logger.debug(f"Loading upsert config from {source}")
            text = source.read_text(encoding="utf-8")
        else:
            text = source

        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            raise ConfigValidationError("YAML config must be a mapping")
        if isinstance(data.get("upsert"), dict):
            data = data["upsert"]

        config = cls.from_dict(data)
        config.validate_or_raise()
        return config


def create_default_config(**overrides: Any) -> UpsertConfig:
    """Create a validated config, overriding top-level fields."""
    config = UpsertConfig(**overrides)
    config.validate_or_raise()
    return config
