"""Typed configuration for portals, scheduling and storage."""

from __future__ import annotations

from copy import deepcopy
import os
import re
from pathlib import Path
from typing import Any, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator, model_validator

import stocksync.selectors as selectors
from stocksync.errors import ConfigError
from stocksync.logging_config import get_logger
from stocksync.records import Portal, RecordStatus


LOGGER = get_logger(__name__)


DEFAULT_CONFIG: dict[str, Any] = {
    "portals": {
        Portal.CUSTOMERCONNECT.value: {
            "name": Portal.CUSTOMERCONNECT.value,
            "base_url": selectors.CC_BASE_URL,
            "routes": deepcopy(selectors.CC_ROUTES),
            "login": deepcopy(selectors.CC_LOGIN),
            "listing": deepcopy(selectors.CC_LIST),
            "detail": deepcopy(selectors.CC_DETAIL),
            "login_url_pattern": r"route=account/login",
        },
        Portal.ROUTESTAR.value: {
            "name": Portal.ROUTESTAR.value,
            "base_url": selectors.RS_BASE_URL,
            "routes": deepcopy(selectors.RS_ROUTES),
            "login": deepcopy(selectors.RS_LOGIN),
            "listing": deepcopy(selectors.RS_LIST),
            "detail": deepcopy(selectors.RS_DETAIL),
            "login_url_pattern": r"/web/login",
        },
    },
    "schedule": {"cron": "0 3 * * *", "timezone": "America/New_York"},
    "storage": {"sqlite_path": "stocksync.sqlite"},
    "sync_log_retention_days": 90,
    "healthcheck_url": "",
    "screenshot_dir": "logs/screenshots",
}

_ENV_OVERRIDES = {
    Portal.CUSTOMERCONNECT.value: "CUSTOMERCONNECT",
    Portal.ROUTESTAR.value: "ROUTESTAR",
}


_WEEKDAYS = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _weekday_number(value: str) -> int:
    token = value.strip().lower()
    if token in _WEEKDAYS:
        return _WEEKDAYS.index(token)
    if not token.isdigit() or int(token) > 7:
        raise ValueError(f"invalid day-of-week value {value!r}")
    return int(token) % 7


def translate_day_of_week(field: str) -> str:
    """Rewrite a crontab day-of-week field (0 or 7 = Sunday) as APScheduler weekday names.

    APScheduler numbers weekdays from Monday, so the field is expanded to an
    explicit list of names that both agree on.
    """

    if field == "*":
        return field
    days: set[int] = set()
    for part in field.split(","):
        base, _, step_text = part.partition("/")
        step = int(step_text) if step_text else 1
        if step < 1:
            raise ValueError(f"invalid day-of-week step {part!r}")
        if base == "*":
            first, last = 0, 7
        elif "-" in base:
            start, _, end = base.partition("-")
            first, last = _weekday_number(start), _weekday_number(end)
            if end.strip() == "7":
                last = 7
            if first > last:
                raise ValueError(f"invalid day-of-week range {part!r}")
        else:
            first = _weekday_number(base)
            last = 7 if step_text else first
        days.update(day % 7 for day in range(first, last + 1, step))
    return ",".join(_WEEKDAYS[day] for day in sorted(days))


def build_cron_trigger(expression: str, timezone: str) -> CronTrigger:
    """Return a CronTrigger for a standard 5-field expression or raise ValueError."""

    fields = (expression or "").split()
    if len(fields) != 5:
        raise ValueError(f"cron expression must have 5 fields, got {len(fields)}: {expression!r}")
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown timezone {timezone!r}") from exc
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=translate_day_of_week(day_of_week),
        timezone=zone,
    )


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Timeouts(_Strict):
    navigation_ms: int = Field(default=90_000, gt=0)
    element_ms: int = Field(default=20_000, gt=0)
    network_ms: int = Field(default=30_000, gt=0)
    content_ms: int = Field(default=180_000, gt=0)
    poll_interval_ms: int = Field(default=2_000, gt=0)
    snapshot_every_ms: int = Field(default=30_000, ge=0)
    advance_ms: int = Field(default=15_000, gt=0)
    row_settle_ms: int = Field(default=5_000, ge=0)
    strict_settle_ms: int = Field(default=2_000, ge=0)
    commit_settle_ms: int = Field(default=10_000, ge=0)
    grace_ms: int = Field(default=15_000, ge=0)


class RetryPolicy(_Strict):
    attempts: int = Field(default=3, ge=1)
    delay_ms: int = Field(default=2_000, ge=0)
    backoff: bool = True
    max_delay_ms: int = Field(default=30_000, ge=0)


class PortalRoutes(_Strict):
    login: str
    lists: dict[str, str]
    detail: str

    @field_validator("lists")
    @classmethod
    def _lists_not_empty(cls, value: dict[str, str]) -> dict[str, str]:
        if not value:
            raise ValueError("at least one list route is required")
        return value


class LoginSelectors(_Strict):
    username: str
    password: str
    submit: str
    error_message: str
    logged_in_indicator: str | None = None


class ListSelectors(_Strict):
    container: str
    rows: str
    cells: str = "td"
    next_buttons: list[str] = Field(min_length=1)
    next_disabled: list[str] = Field(default_factory=list)
    no_results: str | None = None
    summary: str | None = None
    sort_header: str | None = None


class DetailSelectors(_Strict):
    ready: str
    item_rows: str
    info: str | None = None
    totals_rows: str | None = None
    subtotal: str | None = None
    tax: str | None = None
    total: str | None = None
    signed_by: str | None = None
    memo: str | None = None


class PortalConfig(_Strict):
    """Everything needed to drive one portal."""

    name: Portal
    enabled: bool = True
    base_url: str
    username: str = ""
    password: SecretStr = SecretStr("")
    routes: PortalRoutes
    login: LoginSelectors
    listing: ListSelectors
    detail: DetailSelectors
    modals: list[str] = Field(default_factory=lambda: list(selectors.MODALS))
    modal_close: list[str] = Field(default_factory=lambda: list(selectors.MODAL_CLOSE))
    login_url_pattern: str
    timeouts: Timeouts = Field(default_factory=Timeouts)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    page_size: int = Field(default=10, ge=1)
    max_pages: int = Field(default=200, ge=1)
    detail_delay_ms: int = Field(default=500, ge=0)
    ledger_statuses: list[RecordStatus] | None = None

    @field_validator("base_url")
    @classmethod
    def _check_base_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return value

    @field_validator("login_url_pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"invalid login_url_pattern: {exc}") from exc
        return value

    def url(self, route: str) -> str:
        if route.startswith(("http://", "https://")):
            return route
        return f"{self.base_url}{route}"

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password.get_secret_value())


class ScheduleConfig(_Strict):
    enabled: bool = True
    cron: str = "0 3 * * *"
    timezone: str = "America/New_York"
    portal_pause_ms: int = Field(default=5_000, ge=0)

    @model_validator(mode="after")
    def _check_cron(self) -> "ScheduleConfig":
        build_cron_trigger(self.cron, self.timezone)
        return self


class StorageConfig(_Strict):
    sqlite_path: str = "stocksync.sqlite"
    busy_timeout: float = Field(default=30.0, gt=0)


class DashboardConfig(_Strict):
    host: str = "127.0.0.1"
    port: int = Field(default=8000, gt=0, lt=65536)


class AppConfig(_Strict):
    portals: dict[str, PortalConfig]
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)
    sync_log_retention_days: int = Field(default=90, ge=0)
    healthcheck_url: str = ""
    screenshot_dir: str = "logs/screenshots"

    @model_validator(mode="after")
    def _check_portal_keys(self) -> "AppConfig":
        for key, portal in self.portals.items():
            if key != portal.name.value:
                raise ValueError(f"portal key {key!r} does not match name {portal.name.value!r}")
        return self

    def portal(self, name: str | Portal) -> PortalConfig:
        key = name.value if isinstance(name, Portal) else str(name)
        try:
            return self.portals[key]
        except KeyError as exc:
            raise ConfigError(f"Unknown portal {key!r}") from exc

    def enabled_portals(self) -> list[PortalConfig]:
        # Portal enum order: purchases before sales.
        order = [portal.value for portal in Portal]
        return [
            self.portals[key]
            for key in sorted(self.portals, key=lambda k: order.index(k) if k in order else len(order))
            if self.portals[key].enabled
        ]


def _deep_merge(default: Any, override: Any) -> Any:
    if not isinstance(default, dict) or not isinstance(override, dict):
        return deepcopy(override)

    merged: dict[str, Any] = deepcopy(default)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def _apply_env_overrides(config: dict[str, Any], environ: Mapping[str, str]) -> None:
    portals = config.setdefault("portals", {})
    for key, prefix in _ENV_OVERRIDES.items():
        portal = portals.get(key)
        if portal is None:
            continue
        for field_name in ("username", "password", "base_url"):
            value = environ.get(f"{prefix}_{field_name.upper()}")
            if value:
                portal[field_name] = value.strip()

    sqlite_path = environ.get("STOCKSYNC_SQLITE_PATH")
    if sqlite_path:
        config.setdefault("storage", {})["sqlite_path"] = sqlite_path
    cron = environ.get("SYNC_CRON")
    if cron:
        config.setdefault("schedule", {})["cron"] = cron
    timezone = environ.get("SYNC_TIMEZONE")
    if timezone:
        config.setdefault("schedule", {})["timezone"] = timezone


def load_config(path: Path | None = None, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load YAML configuration, merge defaults and environment, and validate it."""

    data: dict[str, Any] = {}
    if path is not None:
        if path.exists():
            with path.open("r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
            if not isinstance(loaded, dict):
                raise ConfigError(f"Configuration root must be a mapping: {path}")
            data = loaded
        else:
            LOGGER.warning("Configuration file %s not found; using defaults", path)

    merged = _deep_merge(DEFAULT_CONFIG, data) if data else deepcopy(DEFAULT_CONFIG)
    _apply_env_overrides(merged, os.environ if environ is None else environ)

    try:
        config = AppConfig.model_validate(merged)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc

    for portal in config.enabled_portals():
        if not portal.has_credentials:
            LOGGER.warning("Portal credentials missing | portal=%s", portal.name.value)
    return config
