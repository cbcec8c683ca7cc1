from __future__ import annotations

import logging
import os
import re
import signal
from collections.abc import Mapping
from dataclasses import dataclass

from cmbump.src.errors import ConfigError
from cmbump.src.locator import ProcessDetection
from cmbump.src.selector import LabelSelector

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SidecarConfig:
    """Immutable sidecar configuration loaded once at startup.

    Attributes:
        target_dir:       Directory the ConfigMap keys are materialized into.
        namespace:        Namespace whose ConfigMaps are listed and watched.
        selector:         Parsed label selector restricting the watched ConfigMaps.
        target:           How to find the process to signal, or ``None`` when
                          signalling is disabled.
        parent:           Optional detection the target's parent process must match.
        signal:           Signal delivered on change, or ``None`` (sync-only mode).
        debounce_seconds: Quiet period that coalesces bursts of changes.
        tls_verify:       Whether to verify the API server certificate chain.
        health_enabled:   Whether to serve the probe/metrics endpoints.
        health_port:      Port of the probe/metrics server.
    """

    target_dir: str
    namespace: str
    selector: LabelSelector
    target: ProcessDetection | None = None
    parent: ProcessDetection | None = None
    signal: signal.Signals | None = None
    debounce_seconds: float = 2.0
    tls_verify: bool = True
    health_enabled: bool = True
    health_port: int = 8080

    @property
    def signalling_enabled(self) -> bool:
        return self.signal is not None and self.target is not None


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(
    name: str,
    default: float,
    *,
    minimum: float | None = None,
    env: Mapping[str, str] | None = None,
) -> float:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a number") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def parse_signal(name: str) -> signal.Signals:
    """Resolve ``SIGHUP``, ``HUP``, ``hup`` or ``1`` to a :class:`signal.Signals` member."""
    raw = name.strip()
    if raw.isdigit():
        try:
            return signal.Signals(int(raw))
        except ValueError as exc:
            raise ConfigError(f"Unknown signal number {raw}") from exc

    normalized = raw.upper()
    if not normalized.startswith("SIG"):
        normalized = f"SIG{normalized}"
    try:
        return signal.Signals[normalized]
    except KeyError as exc:
        raise ConfigError(f"Unknown signal name {name!r}") from exc


def _detection(
    values: Mapping[str, str],
    pid_var: str,
    cmd_var: str,
    adjective: str,
) -> ProcessDetection | None:
    """Build one process detection; a PID takes precedence over a command pattern."""
    raw_pid = values.get(pid_var, "").strip()
    raw_cmd = values.get(cmd_var, "")

    if raw_pid:
        try:
            pid = int(raw_pid)
        except ValueError as exc:
            raise ConfigError(f"{pid_var} must be an integer, got: {raw_pid!r}") from exc
        if pid < 0:
            raise ConfigError(f"{pid_var} must be >= 0, got: {pid}")
        if raw_cmd:
            LOGGER.warning(
                "Ignoring %s process command %r because %s PID %d has been specified",
                adjective,
                raw_cmd,
                adjective,
                pid,
            )
        return ProcessDetection(pid=pid)

    if raw_cmd:
        try:
            return ProcessDetection(pattern=re.compile(raw_cmd))
        except re.error as exc:
            raise ConfigError(f"{cmd_var} is not a valid regular expression: {exc}") from exc

    return None


# Older deployments spell the parent variables with a CMD_ prefix.
_LEGACY_NAMES = {
    "CMD_PROC_PARENT_PID": "CM_PROC_PARENT_PID",
    "CMD_PROC_PARENT_CMD": "CM_PROC_PARENT_CMD",
}


def _with_legacy_names(values: Mapping[str, str]) -> Mapping[str, str]:
    """Map deprecated variable names onto their current names unless those are set."""
    merged: dict[str, str] | None = None
    for legacy, current in _LEGACY_NAMES.items():
        if legacy not in values or current in values:
            continue
        LOGGER.warning("%s is deprecated, use %s instead", legacy, current)
        if merged is None:
            merged = dict(values)
        merged[current] = values[legacy]
    return values if merged is None else merged


def _validate_target_dir(path: str) -> str:
    if not path.strip():
        raise ConfigError("CM_DIR must be set to the directory to synchronize into")
    if not os.path.isdir(path):
        raise ConfigError(f"CM_DIR {path!r} must exist and be a directory")
    if not os.access(path, os.W_OK | os.X_OK):
        raise ConfigError(f"CM_DIR {path!r} must be writable")
    return os.path.abspath(path)


def load_config(env: Mapping[str, str] | None = None) -> SidecarConfig:
    """Load the sidecar configuration from environment variables.

    ``CM_DIR``, ``CM_NAMESPACE`` and ``CM_LABELS`` are required. Signalling is
    enabled by ``CM_PROC_SIGNAL`` together with ``CM_PROC_PID`` or
    ``CM_PROC_CMD``; the parent variables narrow a pattern match to children
    of a given process. Raises :class:`ConfigError` on any invalid value.
    """
    values = _with_legacy_names(env if env is not None else os.environ)

    target_dir = _validate_target_dir(values.get("CM_DIR", ""))

    namespace = values.get("CM_NAMESPACE", "").strip()
    if not namespace:
        raise ConfigError("CM_NAMESPACE must be a non-empty string")

    raw_selector = values.get("CM_LABELS", "")
    if not raw_selector.strip():
        raise ConfigError("CM_LABELS must contain a label selector")
    selector = LabelSelector.parse(raw_selector)

    target = _detection(values, "CM_PROC_PID", "CM_PROC_CMD", "the")
    parent = _detection(values, "CM_PROC_PARENT_PID", "CM_PROC_PARENT_CMD", "the parent")
    if target is not None and target.pid is not None and parent is not None:
        LOGGER.warning(
            "Ignoring the parent process detection %s because the PID %d has been specified",
            parent.describe(),
            target.pid,
        )
        parent = None

    raw_signal = values.get("CM_PROC_SIGNAL", "").strip()
    signum = parse_signal(raw_signal) if raw_signal else None
    if signum is not None and target is None:
        raise ConfigError("CM_PROC_SIGNAL requires CM_PROC_PID or CM_PROC_CMD to be set")
    if signum is None and (target is not None or parent is not None):
        LOGGER.warning("Process detection is configured but CM_PROC_SIGNAL is not; ignoring it")
        target = None
        parent = None

    return SidecarConfig(
        target_dir=target_dir,
        namespace=namespace,
        selector=selector,
        target=target,
        parent=parent,
        signal=signum,
        debounce_seconds=env_float("CM_DEBOUNCE_SECONDS", 2.0, minimum=0.0, env=values),
        tls_verify=parse_bool(values.get("CM_TLS_VERIFY"), default=True),
        health_enabled=parse_bool(values.get("HEALTH_ENABLED"), default=True),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
    )
