"""Configuration validation schema using Pydantic

This module validates the reconciliation configuration YAML file so that a
typo in a page size or tolerance fails at start-up instead of producing a
silently wrong monthly figure.

Supports environment variable substitution for sensitive values using ${VAR_NAME} syntax.
"""

from __future__ import annotations

import logging
import os
import re
from decimal import Decimal
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from pydantic import BaseModel, Field, ValidationError, validator

from billing_recon.ledger_client import DEFAULT_SUMMARY_PATH, DEFAULT_TRANSACTIONS_PATH

# Logging
LOGGER = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r'\$\{([^}]+)\}')
ALERT_SEVERITIES = ("info", "warning", "error", "critical")


def expand_env_placeholders(v: Optional[str]) -> Optional[str]:
    """Replace ``${VAR_NAME}`` placeholders with environment values.

    Unknown variables keep their placeholder and log a warning.
    """
    if v is None or not isinstance(v, str):
        return v

    def replace_var(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            LOGGER.warning("Environment variable %s not found, keeping placeholder", var_name)
            return match.group(0)  # Keep placeholder if not set
        return env_value

    return _ENV_PATTERN.sub(replace_var, v)


class LedgerApiConfig(BaseModel):
    """Connection settings for the wallet ledger API."""
    base_url: str = Field(..., description="API root, e.g. https://console.example.com/api")
    token: Optional[str] = Field(default=None, description="Bearer token for the ledger API")
    transactions_path: str = Field(default=DEFAULT_TRANSACTIONS_PATH)
    summary_path: str = Field(default=DEFAULT_SUMMARY_PATH)
    timeout_seconds: float = Field(default=30.0, gt=0)

    @validator('base_url', 'token', pre=True, always=True)
    def expand_env_vars(cls, v: Optional[str]) -> Optional[str]:
        """Expand environment variables in the URL and token.

        Example: ${WALLET_API_TOKEN} will be replaced with the value of
        the WALLET_API_TOKEN environment variable.
        """
        return expand_env_placeholders(v)

    @validator('token')
    def blank_token_is_missing(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and (not v.strip() or _ENV_PATTERN.fullmatch(v.strip())):
            return None
        return v


class AggregationConfig(BaseModel):
    """Paging and month-window settings for the aggregator."""
    page_size: int = Field(default=100, gt=0, description="Transactions requested per page")
    max_pages: Optional[int] = Field(
        default=20,
        gt=0,
        description="Safety cap on pages per pass; null scans until the ledger is exhausted"
    )
    timezone: Optional[str] = Field(
        default=None,
        description="IANA zone for month boundaries; local time when omitted"
    )
    stop_before_window: bool = Field(
        default=False,
        description="Stop once a page reaches before the month start (needs newest-first ordering)"
    )

    @validator('timezone')
    def validate_timezone(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {v!r}") from exc
        return v


class ClassificationConfig(BaseModel):
    """Debit/credit classification rules."""
    debit_marker: str = Field(default="debit")
    sign_fallback_untyped_only: bool = Field(
        default=False,
        description="Only treat negative amounts as debits when the record has no type"
    )


class ReconciliationConfig(BaseModel):
    """Configuration for reconciliation settings."""
    absolute_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        description="Minimum allowed difference between computed and server totals"
    )
    relative_tolerance: Decimal = Field(
        default=Decimal("0.005"),
        ge=0,
        description="Allowed difference as a fraction of the server total"
    )
    fetch_server_summary: bool = Field(default=True)
    alert_on_discrepancy: bool = Field(default=True)


class AlertChannelConfig(BaseModel):
    """Configuration for alert channels."""
    console: bool = Field(default=True)
    webhook: bool = Field(default=False)
    webhook_url: Optional[str] = Field(default=None)
    file: bool = Field(default=False)
    file_path: Optional[str] = Field(default=None)
    throttle_minutes: int = Field(default=5, ge=0, description="Minutes to throttle duplicate alerts")
    severity_filter: List[str] = Field(
        default=["warning", "error", "critical"],
        description="Severities that are delivered; add \"info\" for truncated scans"
    )

    @validator('webhook_url', pre=True, always=True)
    def expand_env_vars(cls, v: Optional[str]) -> Optional[str]:
        return expand_env_placeholders(v)

    @validator('severity_filter', each_item=True)
    def validate_severity(cls, v: str) -> str:
        level = v.strip().lower()
        if level not in ALERT_SEVERITIES:
            raise ValueError(f"Unknown alert severity: {v!r}")
        return level


class ReportingConfig(BaseModel):
    """Where pass reports are written; ``None`` disables the output."""
    report_path: Optional[str] = Field(default=None, description="JSON report of the latest pass")
    history_path: Optional[str] = Field(default=None, description="CSV history, one row per pass")


class ReconConfig(BaseModel):
    """Main reconciliation configuration schema."""
    ledger_api: LedgerApiConfig
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    classification: ClassificationConfig = Field(default_factory=ClassificationConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    alerting: AlertChannelConfig = Field(default_factory=AlertChannelConfig)
    reporting: ReportingConfig = Field(default_factory=ReportingConfig)

    class Config:
        """Pydantic configuration."""
        validate_assignment = True
        extra = "allow"  # Allow extra fields for future extensibility


def validate_config(config_dict: dict) -> ReconConfig:
    """
    Validate a configuration dictionary against the schema.

    Parameters
    ----------
    config_dict : dict
        The configuration dictionary loaded from YAML

    Returns
    -------
    ReconConfig
        Validated configuration object

    Raises
    ------
    ValidationError
        If configuration is invalid
    """
    try:
        validated_config = ReconConfig(**(config_dict or {}))
        LOGGER.info("Configuration validation passed ✔")
        return validated_config
    except ValidationError as e:
        LOGGER.error("Configuration validation failed ✖: %s", e)
        raise


def load_and_validate_config(config_path: str = "config/recon_config.yaml") -> ReconConfig:
    """
    Load and validate configuration from YAML file.

    Parameters
    ----------
    config_path : str
        Path to the configuration YAML file

    Returns
    -------
    ReconConfig
        Validated configuration object

    Raises
    ------
    FileNotFoundError
        If config file doesn't exist
    ValidationError
        If configuration is invalid
    """
    import yaml
    from pathlib import Path

    config_file = Path(config_path)
    if not config_file.exists():
        # Try relative to project root
        project_root = Path(__file__).parent.parent
        config_file = project_root / config_path
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_file, "r", encoding="utf-8") as f:
        raw_config = yaml.safe_load(f)

    return validate_config(raw_config)
