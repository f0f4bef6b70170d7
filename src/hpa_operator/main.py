"""Main entry point for the HPA operator.

Wires the informers, change filter, retry queue, reconciler and worker
pool together and runs them until SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import UTC

from kubernetes import client

from .cache import Informer
from .config import Config, ConfigurationError
from .controller import CacheSyncError, Controller
from .events import ChangeFilter
from .kube import (
    AutoscalerApi,
    CredentialError,
    build_api_client,
    decode_autoscaler_meta,
    decode_workload,
)
from .models import ObjectMeta, Workload
from .notify import WebhookNotifier
from .ratelimit import default_controller_rate_limiter
from .reconciler import Reconciler
from .templates import TemplateResolver
from .workqueue import RateLimitingQueue

QUEUE_NAME = "hpa-operator"

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_ATTRS = frozenset(
    (
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    )
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        import json
        from datetime import datetime

        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Kubernetes client
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_controller(config: Config, api_client: client.ApiClient) -> Controller:
    """Assemble the controller and its collaborators."""
    workload_informer: Informer[Workload] = Informer(
        "deployments",
        client.AppsV1Api(api_client).list_deployment_for_all_namespaces,
        decode_workload,
        lambda workload: workload.key,
        api_client,
        config.resync_period_seconds,
    )
    autoscaler_informer: Informer[ObjectMeta] = Informer(
        "horizontalpodautoscalers",
        client.AutoscalingV2Api(api_client).list_horizontal_pod_autoscaler_for_all_namespaces,
        decode_autoscaler_meta,
        lambda meta: meta.key,
        api_client,
        config.resync_period_seconds,
    )

    queue = RateLimitingQueue(
        default_controller_rate_limiter(
            config.retry_base_delay_seconds, config.retry_max_delay_seconds
        ),
        name=QUEUE_NAME,
    )

    change_filter = ChangeFilter(config, queue)
    workload_informer.add_event_handler(change_filter.handle)

    reconciler = Reconciler(
        config,
        workload_informer.lister(),
        autoscaler_informer.lister(),
        AutoscalerApi.from_api_client(api_client),
        TemplateResolver(config.templates_dir),
    )

    notifier = (
        WebhookNotifier(config.notify_webhook_url) if config.notify_webhook_url else None
    )

    return Controller(
        config,
        queue,
        reconciler,
        informers=[workload_informer, autoscaler_informer],
        notifier=notifier,
    )


async def main() -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    logging.getLogger().setLevel(config.log_level)
    logger.info(
        "Starting HPA operator",
        extra={
            "templates_dir": str(config.templates_dir),
            "annotation_prefix": config.annotation_prefix,
            "ignored_namespaces": sorted(config.ignored_namespaces),
            "workers": config.workers,
            "require_ready": config.require_ready,
        },
    )

    try:
        api_client = build_api_client(config)
    except CredentialError as e:
        logger.error("Failed to build Kubernetes client", extra={"error": str(e)})
        return 1

    controller = build_controller(config, api_client)

    # Set up signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await controller.run(shutdown_event)
    except CacheSyncError as e:
        logger.error("Failed to wait for caches to sync", extra={"error": str(e)})
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1
    finally:
        api_client.close()

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
