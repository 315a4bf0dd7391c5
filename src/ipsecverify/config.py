"""Global configuration — XDG paths, env vars, defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from ipsecverify.errors import ConfigError
from ipsecverify.rollout.models import ConvergenceDeadline

# Validity of the certificates baked into the north-south machine config.
DEFAULT_CERT_EXPIRATION = datetime(2034, 4, 10, tzinfo=timezone.utc)

_TRUTHY = {"1", "true", "yes", "on"}


def _default_data_dir() -> Path:
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "ipsecverify"
    return Path.home() / ".local" / "share" / "ipsecverify"


def _default_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "ipsecverify"
    return Path.home() / ".config" / "ipsecverify"


@dataclass
class IpsecVerifyConfig:
    """Application-wide configuration."""

    data_dir: Path = field(default_factory=_default_data_dir)
    config_dir: Path = field(default_factory=_default_config_dir)
    oc_binary: str = "oc"
    kubeconfig: str | None = None
    namespace: str = "ipsec-verify"
    command_timeout: float = 60.0
    poll_interval: float = 60.0
    max_wait: float = 1200.0
    capture_timeout: int = 10
    ping_count: int = 3
    network_tools_image: str = "quay.io/openshift/origin-network-tools:latest"
    exec_image: str = "registry.k8s.io/e2e-test-images/agnhost:2.47"
    keep_on_failure: bool = False
    cert_expiration: datetime = DEFAULT_CERT_EXPIRATION
    verbose: bool = False

    @property
    def deadline(self) -> ConvergenceDeadline:
        return ConvergenceDeadline(interval=self.poll_interval, max_wait=self.max_wait)

    @property
    def manifest_dir(self) -> Path:
        """Holds the cert machine config and nmstate operator manifests."""
        return self.config_dir / "manifests"

    @property
    def work_dir(self) -> Path:
        """Rendered per-node policies are written here before being applied."""
        return self.data_dir / "rendered"

    @classmethod
    def load(cls) -> IpsecVerifyConfig:
        """Load config from environment variables with XDG defaults."""
        config = cls()

        config.oc_binary = os.environ.get("IPSECVERIFY_OC_BINARY", config.oc_binary)
        config.kubeconfig = os.environ.get("KUBECONFIG") or None
        config.namespace = os.environ.get("IPSECVERIFY_NAMESPACE", config.namespace)
        config.network_tools_image = os.environ.get(
            "IPSECVERIFY_NETWORK_TOOLS_IMAGE", config.network_tools_image
        )
        config.exec_image = os.environ.get("IPSECVERIFY_EXEC_IMAGE", config.exec_image)

        config.poll_interval = _env_float("IPSECVERIFY_POLL_INTERVAL", config.poll_interval)
        config.max_wait = _env_float("IPSECVERIFY_MAX_WAIT", config.max_wait)
        config.command_timeout = _env_float(
            "IPSECVERIFY_COMMAND_TIMEOUT", config.command_timeout
        )
        config.capture_timeout = int(
            _env_float("IPSECVERIFY_CAPTURE_TIMEOUT", config.capture_timeout)
        )
        config.ping_count = int(_env_float("IPSECVERIFY_PING_COUNT", config.ping_count))

        env_keep = os.environ.get("IPSECVERIFY_KEEP_ON_FAILURE")
        if env_keep:
            config.keep_on_failure = env_keep.strip().lower() in _TRUTHY

        env_expiry = os.environ.get("IPSECVERIFY_CERT_EXPIRATION")
        if env_expiry:
            try:
                expiry = datetime.fromisoformat(env_expiry)
            except ValueError as exc:
                raise ConfigError(
                    f"IPSECVERIFY_CERT_EXPIRATION is not an ISO date: {env_expiry!r}"
                ) from exc
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
            config.cert_expiration = expiry

        return config


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from exc
