from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys

from cmbump.src.config import load_config
from cmbump.src.errors import ConfigError
from cmbump.src.health import start_health_server
from cmbump.src.kube import build_core_api, load_kube_configuration
from cmbump.src.metrics import METRICS
from cmbump.src.supervisor import build_supervisor

RUNTIME_VERSION = "0.3.0"
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
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)
_NOISY_LOGGERS = ("kubernetes", "urllib3")


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
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Configure structured JSON logging with a level from ``LOG_LEVEL`` env var."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.root.level))


def main() -> int:
    """Sidecar entrypoint: configure logging, load config, and run the sync pipeline."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    logger.info(
        "cm-bump starting: syncing ConfigMaps in %s matching %r into %s",
        config.namespace,
        config.selector.expression,
        config.target_dir,
    )

    load_kube_configuration(tls_verify=config.tls_verify)
    supervisor = build_supervisor(config, build_core_api())

    health_server = None
    if config.health_enabled:
        health_server = start_health_server(ready=supervisor.ready, port=config.health_port)

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        supervisor.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    try:
        exit_code = supervisor.run()
    finally:
        if health_server is not None:
            health_server.shutdown()

    logger.info("cm-bump stopped with exit status %d", exit_code)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
