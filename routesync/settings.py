from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, fields, replace
from typing import Any
from urllib.parse import urlparse


class ConfigError(ValueError):
    pass


_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(text: str) -> float:
    """Parse a duration such as ``30s``, ``5m`` or ``1m30s`` into seconds."""
    raw = (text or "").strip()
    if not raw:
        raise ConfigError("empty duration")
    pos = 0
    total = 0.0
    for m in _DURATION_RE.finditer(raw):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos != len(raw):
        raise ConfigError(f"invalid duration {text!r} (expected e.g. 30s, 5m, 1h30m)")
    return total


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    # Core
    namespace: str = ""
    base_domain: str = ""
    default_port: int = 0
    kubeconfig: str | None = None
    resync_period: str = ""
    reconcile_period: str = ""
    label_selector: str = "routesync.io/managed-by=routesync"
    identity_label: str = "routesync.io/identity"

    # Routing engine admin API
    admin_url: str = ""
    server_name: str = ""
    request_timeout_s: float = 10.0
    health_timeout_s: float = 2.0
    health_path: str = "/config/"

    # Startup recovery
    recovery_initial_delay_s: float = 2.0
    recovery_max_delay_s: float = 30.0
    recovery_max_attempts: int = 5

    # Shutdown
    watch_timeout_s: float = 5.0
    shutdown_grace_s: float = 10.0

    # Event journal
    db_path: str = "routesync.db"

    @property
    def resync_period_s(self) -> float:
        return parse_duration(self.resync_period or "30s")

    @property
    def reconcile_period_s(self) -> float:
        return parse_duration(self.reconcile_period or "5m")

    def validated(self) -> "Settings":
        """Return a copy with defaults filled in, or raise ConfigError."""
        if not self.namespace:
            raise ConfigError("namespace is required")
        if not self.base_domain:
            raise ConfigError("base_domain is required")
        if "://" in self.base_domain:
            raise ConfigError("base_domain should not contain a scheme (http:// or https://)")

        default_port = self.default_port or 8089
        if not 1 <= default_port <= 65535:
            raise ConfigError(f"default_port must be between 1 and 65535, got {default_port}")

        resync_period = self.resync_period or "30s"
        reconcile_period = self.reconcile_period or "5m"
        for label, value in (("resync_period", resync_period), ("reconcile_period", reconcile_period)):
            try:
                seconds = parse_duration(value)
            except ConfigError as e:
                raise ConfigError(f"invalid {label}: {e}") from None
            if seconds <= 0:
                raise ConfigError(f"{label} must be positive, got {value!r}")

        admin_url = (self.admin_url or "http://localhost:2019").rstrip("/")
        parsed = urlparse(admin_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ConfigError(f"invalid admin_url: {self.admin_url!r}")

        for label in ("request_timeout_s", "health_timeout_s"):
            if getattr(self, label) <= 0:
                raise ConfigError(f"{label} must be positive")
        if self.recovery_max_attempts < 1:
            raise ConfigError("recovery_max_attempts must be at least 1")
        if self.recovery_initial_delay_s < 0 or self.recovery_max_delay_s < 0:
            raise ConfigError("recovery delays must not be negative")
        if not self.health_path.startswith("/"):
            raise ConfigError("health_path must start with '/'")
        if self.watch_timeout_s < 1:
            raise ConfigError("watch_timeout_s must be at least 1")
        if self.shutdown_grace_s <= self.watch_timeout_s:
            raise ConfigError("shutdown_grace_s must be longer than watch_timeout_s")

        return replace(
            self,
            default_port=default_port,
            resync_period=resync_period,
            reconcile_period=reconcile_period,
            admin_url=admin_url,
            server_name=self.server_name or "srv0",
            kubeconfig=self.kubeconfig or None,
        )

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "Settings":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"unrecognized settings: {', '.join(unknown)}")
        try:
            return cls(**data).validated()
        except TypeError as e:
            raise ConfigError(str(e)) from None

    @classmethod
    def from_json(cls, text: str) -> "Settings":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigError(f"failed to parse config: {e}") from None
        if not isinstance(data, dict):
            raise ConfigError("config must be a JSON object")
        return cls.from_mapping(data)

    @classmethod
    def from_env(cls, prefix: str = "ROUTESYNC_") -> "Settings":
        d = cls()
        return cls(
            namespace=os.getenv(f"{prefix}NAMESPACE", ""),
            base_domain=os.getenv(f"{prefix}BASE_DOMAIN", ""),
            default_port=_env_int(f"{prefix}DEFAULT_PORT", 0),
            kubeconfig=os.getenv(f"{prefix}KUBECONFIG"),
            resync_period=os.getenv(f"{prefix}RESYNC_PERIOD", ""),
            reconcile_period=os.getenv(f"{prefix}RECONCILE_PERIOD", ""),
            label_selector=os.getenv(f"{prefix}LABEL_SELECTOR", d.label_selector),
            identity_label=os.getenv(f"{prefix}IDENTITY_LABEL", d.identity_label),
            admin_url=os.getenv(f"{prefix}ADMIN_URL", ""),
            server_name=os.getenv(f"{prefix}SERVER_NAME", ""),
            request_timeout_s=_env_float(f"{prefix}REQUEST_TIMEOUT_S", d.request_timeout_s),
            health_timeout_s=_env_float(f"{prefix}HEALTH_TIMEOUT_S", d.health_timeout_s),
            health_path=os.getenv(f"{prefix}HEALTH_PATH", d.health_path),
            recovery_initial_delay_s=_env_float(f"{prefix}RECOVERY_INITIAL_DELAY_S", d.recovery_initial_delay_s),
            recovery_max_delay_s=_env_float(f"{prefix}RECOVERY_MAX_DELAY_S", d.recovery_max_delay_s),
            recovery_max_attempts=_env_int(f"{prefix}RECOVERY_MAX_ATTEMPTS", d.recovery_max_attempts),
            watch_timeout_s=_env_float(f"{prefix}WATCH_TIMEOUT_S", d.watch_timeout_s),
            shutdown_grace_s=_env_float(f"{prefix}SHUTDOWN_GRACE_S", d.shutdown_grace_s),
            db_path=os.getenv(f"{prefix}DB_PATH", d.db_path),
        ).validated()


def load_settings() -> Settings:
    """Load settings from the JSON file named by ROUTESYNC_CONFIG, else from the environment."""
    path = os.getenv("ROUTESYNC_CONFIG")
    if path:
        try:
            with open(path, encoding="utf-8") as fh:
                return Settings.from_json(fh.read())
        except OSError as e:
            raise ConfigError(f"cannot read config file {path}: {e}") from None
    return Settings.from_env()
