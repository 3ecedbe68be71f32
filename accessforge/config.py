# -*- coding: utf-8 -*-
"""Location: ./accessforge/config.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

AccessForge Configuration.
This module defines configuration settings for the access-control engine using Pydantic.
It loads configuration from environment variables with sensible defaults.

Environment variables:
- APP_NAME: Engine name (default: "AccessForge")
- LOG_LEVEL: Logging level (default: "INFO")
- DECISION_CACHE_ENABLED: Cache evaluation results (default: True)
- DECISION_CACHE_TTL: Seconds a cached decision stays valid (default: 300)
- DECISION_CACHE_MAX_ENTRIES: In-memory cache capacity (default: 10000)
- REDIS_URL: Use a shared Redis decision cache when set (default: unset)
- DATABASE_URL: SQL policy store URL (default: "sqlite:///./accessforge.db")
- BATCH_MAX_CONCURRENCY: Fan-out limit for batch evaluation (default: 32)
- GLOBAL_SENSITIVE_FIELDS: Fields audited for every resource type (JSON or CSV)

Examples:
    >>> from accessforge.config import Settings
    >>> s = Settings(decision_cache_ttl=60)
    >>> s.decision_cache_ttl
    60
    >>> s.priority_in_range(1000)
    True
    >>> s.priority_in_range(1001)
    False
"""

# Standard
from functools import lru_cache
import logging
import os
from typing import Any, Dict, List, Optional

# Third-Party
import orjson
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


def _normalize_env_list_vars() -> None:
    """Normalize list-typed env vars to valid JSON arrays.

    If a value is empty or CSV, convert it to a JSON array string so the
    settings provider can decode it.
    """
    for key in ("GLOBAL_SENSITIVE_FIELDS",):
        raw = os.environ.get(key)
        if raw is None:
            continue
        s = raw.strip()
        if not s:
            os.environ[key] = "[]"
            continue
        if s.startswith("["):
            try:
                orjson.loads(s)
                continue
            except orjson.JSONDecodeError:
                pass  # fall through to CSV parsing
        items = [item.strip() for item in s.split(",") if item.strip()]
        os.environ[key] = orjson.dumps(items).decode()


_normalize_env_list_vars()


DEFAULT_SENSITIVE_FIELDS: Dict[str, List[str]] = {
    "customer": ["ssn", "dateOfBirth", "medicalHistory", "creditScore", "income", "bankAccount"],
    "user": ["password", "passwordHash", "securityQuestions", "mfaSecret"],
    "insurancepolicy": ["profitMargin", "internalNotes", "commissionStructure"],
    "transaction": ["bankDetails", "routingNumber", "accountNumber"],
    "employee": ["salary", "performanceRating", "disciplinaryRecords"],
}


class Settings(BaseSettings):
    """
    AccessForge configuration settings.

    Examples:
        >>> s = Settings(redis_url="redis://localhost:6379/0")
        >>> s.use_redis_cache
        True
        >>> Settings(redis_url=None).use_redis_cache
        False
        >>> Settings().sensitive_fields_for("Customer")[:2]
        ['ssn', 'dateOfBirth']
    """

    app_name: str = "AccessForge"
    log_level: str = "INFO"

    # Decision cache
    decision_cache_enabled: bool = True
    decision_cache_ttl: int = Field(default=300, ge=1)
    decision_cache_max_entries: int = Field(default=10_000, ge=1)
    decision_cache_prefix: str = "abac:decision"
    redis_url: Optional[str] = None

    # Storage
    database_url: str = "sqlite:///./accessforge.db"

    # Evaluation
    batch_max_concurrency: int = Field(default=32, ge=1)

    # Policy validation
    default_policy_priority: int = 100
    policy_priority_min: int = 0
    policy_priority_max: int = 1000

    # Ability compilation
    super_admin_flag: str = "isSuperAdmin"

    # Field audit
    field_audit_enabled: bool = True
    global_sensitive_fields: List[str] = Field(default_factory=lambda: ["password", "ssn", "creditCard", "bankAccount", "medicalRecord"])
    sensitive_fields: Dict[str, List[str]] = Field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_SENSITIVE_FIELDS.items()})

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate the logging level name.

        Args:
            v: Raw level name

        Returns:
            str: Upper-cased level name

        Raises:
            ValueError: If the level is not a standard logging level

        Examples:
            >>> Settings(log_level="debug").log_level
            'DEBUG'
        """
        level = v.upper()
        if level not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("sensitive_fields")
    @classmethod
    def normalize_sensitive_fields(cls, v: Dict[str, List[str]]) -> Dict[str, List[str]]:
        """Key the per-type sensitive-field map by lower-cased resource type.

        Args:
            v: Mapping of resource type to field names

        Returns:
            Dict[str, List[str]]: Normalized mapping
        """
        return {key.lower(): list(fields) for key, fields in v.items()}

    @property
    def use_redis_cache(self) -> bool:
        """Whether the shared Redis decision cache should be used.

        Returns:
            bool: True when caching is enabled and a Redis URL is configured
        """
        return self.decision_cache_enabled and bool(self.redis_url)

    def priority_in_range(self, priority: int) -> bool:
        """Check a policy priority against the configured bounds.

        Args:
            priority: Candidate priority

        Returns:
            bool: True when ``policy_priority_min <= priority <= policy_priority_max``
        """
        return self.policy_priority_min <= priority <= self.policy_priority_max

    def sensitive_fields_for(self, resource_type: str) -> List[str]:
        """Return the resource-specific sensitive fields for a type.

        Args:
            resource_type: Resource type name (case-insensitive)

        Returns:
            List[str]: Sensitive fields configured for that type
        """
        return list(self.sensitive_fields.get(resource_type.lower(), []))


def configure_logging(level: Optional[str] = None) -> None:
    """Install a basic logging handler if the root logger has none.

    Args:
        level: Optional level name overriding ``Settings.log_level``
    """
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=level or get_settings().log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )


@lru_cache()
def get_settings(**kwargs: Any) -> Settings:
    """Get cached settings instance.

    Args:
        **kwargs: Keyword arguments to pass to the Settings constructor.

    Returns:
        Settings: A cached instance of the Settings class.

    Examples:
        >>> settings = get_settings()
        >>> isinstance(settings, Settings)
        True
        >>> get_settings() is settings
        True
    """
    return Settings(**kwargs)


class LazySettingsWrapper:
    """Lazily initialize settings singleton on getattr"""

    def __getattr__(self, key: str) -> Any:
        """Get the real settings object and forward to it

        Args:
            key: The key to fetch from settings

        Returns:
            Any: The value of the attribute on the settings
        """
        return getattr(get_settings(), key)


settings = LazySettingsWrapper()
