"""
Typed service settings built from a loaded Config.

Example config.yaml::

    state:
      path: .filepoll/state.duckdb
    scheduler:
      tick_interval_s: 60
      max_concurrent_executions: 100
    notifications:
      transport: webhook
      webhook:
        default_url: https://hooks.example.com/filepoll
        signing_secret: ${FILEPOLL_WEBHOOK_SECRET}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from filepoll.config.loader import Config
from filepoll.core.retry import RetryPolicy
from filepoll.exceptions import ConfigurationError, NetworkError

TRANSPORTS = ("memory", "webhook", "kafka")


@dataclass
class SchedulerSettings:
    tick_interval_s: float = 60.0
    max_concurrent_executions: int = 100
    execution_timeout_s: float = 600.0
    abandoned_after_s: float = 1800.0
    watchdog_interval_s: float = 300.0
    batch_size: int = 500
    shutdown_grace_s: float = 30.0


@dataclass
class RetrySettings:
    max_attempts: int = 2
    initial_delay_s: float = 2.0
    max_delay_s: float = 10.0
    exponential_base: float = 2.0
    jitter: bool = True

    def policy(self) -> RetryPolicy:
        """Listing retry policy: network errors only."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay_s,
            max_delay=self.max_delay_s,
            exponential_base=self.exponential_base,
            jitter=self.jitter,
            retryable_exceptions=(NetworkError,),
        )


@dataclass
class NotificationSettings:
    transport: str = "memory"
    timeout_s: float = 10.0
    summary_enabled: bool = True
    webhook: dict[str, Any] = field(default_factory=dict)
    kafka: dict[str, Any] = field(default_factory=dict)


@dataclass
class MetricsSettings:
    enabled: bool = True
    port: int | None = None


@dataclass
class ServiceSettings:
    """Everything the service needs, with defaults for an empty config."""

    state_path: str = ":memory:"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    max_results: int = 10_000
    adapter_threads: int = 16
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    secrets_env_prefix: str = "FILEPOLL_SECRET_"
    metrics: MetricsSettings = field(default_factory=MetricsSettings)
    logging: dict[str, Any] = field(default_factory=dict)
    configurations: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: Config | dict[str, Any], project_dir: Path | None = None) -> ServiceSettings:
        """
        Build settings from a Config (or plain dict), checking every range.

        Raises:
            ConfigurationError: Listing every out-of-range or malformed value
        """
        if isinstance(config, dict):
            config = Config(config)
        errors: list[str] = []

        def num(key: str, default: float, lo: float, hi: float, *, integer: bool = False) -> Any:
            raw = config.get(key, default)
            try:
                value = int(raw) if integer else float(raw)
            except (TypeError, ValueError):
                errors.append(f"{key} must be a number, got {raw!r}")
                return default
            if not lo <= value <= hi:
                errors.append(f"{key} must be between {lo:g} and {hi:g}, got {value:g}")
            return value

        state_path = str(config.get("state.path", ":memory:"))
        if state_path != ":memory:" and project_dir is not None and not Path(state_path).is_absolute():
            state_path = str(project_dir / state_path)

        scheduler = SchedulerSettings(
            tick_interval_s=num("scheduler.tick_interval_s", 60, 1, 3600),
            max_concurrent_executions=num("scheduler.max_concurrent_executions", 100, 1, 1000, integer=True),
            execution_timeout_s=num("scheduler.execution_timeout_s", 600, 1, 86400),
            abandoned_after_s=num("scheduler.abandoned_after_s", 1800, 60, 7 * 86400),
            watchdog_interval_s=num("scheduler.watchdog_interval_s", 300, 1, 86400),
            batch_size=num("scheduler.batch_size", 500, 1, 100_000, integer=True),
            shutdown_grace_s=num("scheduler.shutdown_grace_s", 30, 0, 3600),
        )
        if scheduler.abandoned_after_s <= scheduler.execution_timeout_s:
            errors.append("scheduler.abandoned_after_s must be greater than scheduler.execution_timeout_s")

        retry = RetrySettings(
            max_attempts=num("retry.max_attempts", 2, 0, 10, integer=True),
            initial_delay_s=num("retry.initial_delay_s", 2, 0.001, 300),
            max_delay_s=num("retry.max_delay_s", 10, 0.001, 3600),
            exponential_base=num("retry.exponential_base", 2, 1, 10),
            jitter=bool(config.get("retry.jitter", True)),
        )
        if retry.max_delay_s < retry.initial_delay_s:
            errors.append("retry.max_delay_s must be >= retry.initial_delay_s")

        transport = str(config.get("notifications.transport", "memory")).lower()
        if transport not in TRANSPORTS:
            errors.append(f"notifications.transport must be one of {', '.join(TRANSPORTS)}, got {transport!r}")
        notifications = NotificationSettings(
            transport=transport,
            timeout_s=num("notifications.timeout_s", 10, 0.1, 300),
            summary_enabled=bool(config.get("notifications.summary_enabled", True)),
            webhook=dict(config.get("notifications.webhook", {}) or {}),
            kafka=dict(config.get("notifications.kafka", {}) or {}),
        )
        if transport == "webhook" and not (notifications.webhook.get("default_url") or notifications.webhook.get("endpoints")):
            errors.append("notifications.webhook needs default_url or endpoints")

        port = config.get("metrics.port")
        metrics = MetricsSettings(
            enabled=bool(config.get("metrics.enabled", True)),
            port=num("metrics.port", 9108, 1, 65535, integer=True) if port is not None else None,
        )

        seeds = config.get("configurations", []) or []
        if not isinstance(seeds, list):
            errors.append("configurations must be a list")
            seeds = []

        settings = cls(
            state_path=state_path,
            scheduler=scheduler,
            retry=retry,
            max_results=num("adapters.max_results", 10_000, 1, 1_000_000, integer=True),
            adapter_threads=num("adapters.threads", 16, 1, 256, integer=True),
            notifications=notifications,
            secrets_env_prefix=str(config.get("secrets.env_prefix", "FILEPOLL_SECRET_")),
            metrics=metrics,
            logging=dict(config.get("logging", {}) or {}),
            configurations=list(seeds),
        )
        if errors:
            raise ConfigurationError("Invalid service configuration:\n  " + "\n  ".join(errors))
        return settings
