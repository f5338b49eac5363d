from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from ingress_controller.src.controller import build_controller_from_env, env_int
from ingress_controller.src.health import start_health_server
from ingress_controller.src.kube import build_clients, load_kube_configuration
from ingress_controller.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def main() -> None:
    """Controller entrypoint: configure logging, sync the caches, and run the workers."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration()
    core_api, networking_api = build_clients()

    controller = build_controller_from_env(core_api=core_api, networking_api=networking_api)
    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    cache_sync_timeout = env_int("CACHE_SYNC_TIMEOUT_SECONDS", 120, minimum=1)
    health_server = start_health_server(
        workers=controller.ready,
        port=health_port,
        cache_synced=lambda: all(informer.has_synced for informer in controller.informers),
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    controller.start_informers(shutdown_event)
    if not controller.wait_for_cache_sync(shutdown_event, timeout=cache_sync_timeout):
        health_server.shutdown()
        if shutdown_event.is_set():
            logger.info("Controller stopped before caches synced")
            return
        logger.error("Timed out after %ds waiting for caches to sync", cache_sync_timeout)
        sys.exit(1)

    logger.info("Caches synced; starting workers")
    controller.run(shutdown_event)

    health_server.shutdown()
    if controller.failed:
        logger.error("Controller stopped after losing an informer cache")
        sys.exit(1)
    logger.info("Controller stopped")


if __name__ == "__main__":
    main()
