"""Configuration management with validation.

Configuration is loaded once at startup, validated, and passed as an
immutable value into every component that needs it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Annotation keys are built from a prefix so clusters can namespace them
DEFAULT_ANNOTATION_PREFIX = "hpa.apixio.com"
MIN_REPLICAS_SUFFIX = "min"
MAX_REPLICAS_SUFFIX = "max"
TEMPLATE_LIST_SUFFIX = "template"

DEFAULT_MIN_REPLICAS = 1
DEFAULT_MAX_REPLICAS = 3

DEFAULT_IGNORED_NAMESPACES = ("kube-system", "kube-public")
DEFAULT_TEMPLATES_DIR = "/template/"

# Worker pool bounds
DEFAULT_WORKERS = 1
MAX_WORKERS = 64

# Informer timing
DEFAULT_RESYNC_PERIOD_SECONDS = 30
DEFAULT_CACHE_SYNC_TIMEOUT_SECONDS = 60

# Retry backoff, matching the standard controller rate limiter
DEFAULT_RETRY_BASE_DELAY_SECONDS = 0.005
DEFAULT_RETRY_MAX_DELAY_SECONDS = 1000.0
DEFAULT_OVERALL_QPS = 10.0
DEFAULT_OVERALL_BURST = 100

DEFAULT_NOTIFY_AFTER_FAILURES = 5

MAX_TEMPLATE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max metric template

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # API access
    master_url: str | None = None
    kubeconfig: Path | None = None

    # Templates
    templates_dir: Path = field(default_factory=lambda: Path(DEFAULT_TEMPLATES_DIR))

    # Annotations and filtering
    annotation_prefix: str = DEFAULT_ANNOTATION_PREFIX
    ignored_namespaces: frozenset[str] = frozenset(DEFAULT_IGNORED_NAMESPACES)

    # Worker pool and informers
    workers: int = DEFAULT_WORKERS
    resync_period_seconds: int = DEFAULT_RESYNC_PERIOD_SECONDS
    cache_sync_timeout_seconds: int = DEFAULT_CACHE_SYNC_TIMEOUT_SECONDS

    # Retry backoff
    retry_base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    retry_max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS

    # Behavior
    require_ready: bool = True

    # Alerting
    notify_webhook_url: str | None = None
    notify_after_failures: int = DEFAULT_NOTIFY_AFTER_FAILURES

    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.annotation_prefix or "/" in self.annotation_prefix:
            errors.append(
                f"ANNOTATION_PREFIX must be a non-empty DNS prefix: {self.annotation_prefix!r}"
            )

        if not (1 <= self.workers <= MAX_WORKERS):
            errors.append(f"WORKERS must be between 1 and {MAX_WORKERS}")

        if self.resync_period_seconds < 1:
            errors.append("RESYNC_PERIOD must be at least 1 second")

        if self.cache_sync_timeout_seconds < 1:
            errors.append("CACHE_SYNC_TIMEOUT must be at least 1 second")

        if self.retry_base_delay_seconds <= 0:
            errors.append("RETRY_BASE_DELAY must be positive")
        elif self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            errors.append("RETRY_MAX_DELAY must not be lower than RETRY_BASE_DELAY")

        if self.notify_after_failures < 1:
            errors.append("NOTIFY_AFTER_FAILURES must be at least 1")

        if self.notify_webhook_url and not self.notify_webhook_url.startswith(
            ("http://", "https://")
        ):
            errors.append(f"NOTIFY_WEBHOOK_URL must be an http(s) URL: {self.notify_webhook_url}")

        if self.log_level not in VALID_LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}: {self.log_level}")

        # Path validation
        if not self.templates_dir.is_dir():
            errors.append(f"Templates directory does not exist: {self.templates_dir}")

        if self.kubeconfig is not None and not self.kubeconfig.is_file():
            errors.append(f"Kubeconfig file does not exist: {self.kubeconfig}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def min_replicas_annotation(self) -> str:
        return f"{self.annotation_prefix}/{MIN_REPLICAS_SUFFIX}"

    @property
    def max_replicas_annotation(self) -> str:
        return f"{self.annotation_prefix}/{MAX_REPLICAS_SUFFIX}"

    @property
    def template_annotation(self) -> str:
        return f"{self.annotation_prefix}/{TEMPLATE_LIST_SUFFIX}"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            K8S_MASTER: API server URL overriding the kubeconfig host
            K8S_CONFIG: Path to a kubeconfig file (default: in-cluster, then ~/.kube/config)
            HPA_TEMPLATES: Directory holding metric templates (default: /template/)
            ANNOTATION_PREFIX: Prefix of the recognized annotations (default: hpa.apixio.com)
            IGNORED_NAMESPACES: Comma-separated reserved namespaces
                (default: kube-system,kube-public)
            WORKERS: Number of concurrent workers (default: 1)
            RESYNC_PERIOD: Timeout in seconds of each watch request; the watch then
                resumes from the last resourceVersion (default: 30)
            CACHE_SYNC_TIMEOUT: Seconds to wait for the initial cache sync (default: 60)
            RETRY_BASE_DELAY: Base delay of the per-item backoff in seconds (default: 0.005)
            RETRY_MAX_DELAY: Cap of the per-item backoff in seconds (default: 1000)
            REQUIRE_READY: Only reconcile fully ready Deployments (default: true)
            NOTIFY_WEBHOOK_URL: Alerting webhook (default: disabled)
            NOTIFY_AFTER_FAILURES: Consecutive failures before alerting (default: 5)
            LOG_LEVEL: Root log level (default: INFO)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_list(key: str, default: tuple[str, ...]) -> frozenset[str]:
            value = os.environ.get(key)
            if value is None:
                return frozenset(default)
            return frozenset(item.strip() for item in value.split(",") if item.strip())

        kubeconfig = os.environ.get("K8S_CONFIG")

        return cls(
            master_url=os.environ.get("K8S_MASTER") or None,
            kubeconfig=Path(kubeconfig) if kubeconfig else None,
            templates_dir=Path(os.environ.get("HPA_TEMPLATES") or DEFAULT_TEMPLATES_DIR),
            annotation_prefix=os.environ.get("ANNOTATION_PREFIX") or DEFAULT_ANNOTATION_PREFIX,
            ignored_namespaces=get_list("IGNORED_NAMESPACES", DEFAULT_IGNORED_NAMESPACES),
            workers=get_int("WORKERS", DEFAULT_WORKERS),
            resync_period_seconds=get_int("RESYNC_PERIOD", DEFAULT_RESYNC_PERIOD_SECONDS),
            cache_sync_timeout_seconds=get_int(
                "CACHE_SYNC_TIMEOUT", DEFAULT_CACHE_SYNC_TIMEOUT_SECONDS
            ),
            retry_base_delay_seconds=get_float(
                "RETRY_BASE_DELAY", DEFAULT_RETRY_BASE_DELAY_SECONDS
            ),
            retry_max_delay_seconds=get_float("RETRY_MAX_DELAY", DEFAULT_RETRY_MAX_DELAY_SECONDS),
            require_ready=get_bool("REQUIRE_READY", True),
            notify_webhook_url=os.environ.get("NOTIFY_WEBHOOK_URL") or None,
            notify_after_failures=get_int("NOTIFY_AFTER_FAILURES", DEFAULT_NOTIFY_AFTER_FAILURES),
            log_level=(os.environ.get("LOG_LEVEL") or "INFO").upper(),
        )
