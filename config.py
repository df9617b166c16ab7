# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional


@dataclass(frozen=True)
class SidecarConfig:
    """What gets injected into a Pod and how its bootstrap is rendered."""

    name: str = "hermit"
    image: str = "envoyproxy/envoy:v1.24-latest"
    config_mount: str = "/etc/envoy"
    artifact_name: str = "envoy-config"
    artifact_key: str = "envoy.yaml"
    policy_volume: str = "hermit-policy"
    ingress_port: int = 80
    admin_port: int = 8001
    upstream_address: str = "localhost"
    upstream_port: int = 5678
    wasm_path: str = "/etc/hermit.wasm"

    @property
    def bootstrap_path(self) -> str:
        return f"{self.config_mount.rstrip('/')}/{self.artifact_key}"


@dataclass(frozen=True)
class Settings:
    admission_host: str = "0.0.0.0"
    admission_port: int = 8443
    tls_cert: Optional[str] = None
    tls_key: Optional[str] = None

    discovery_address: str = "[::]:18000"
    discovery_workers: int = 10

    annotation: str = "hermit.io/config"
    default_policy: str = "hermit-config"
    policy_key: str = "hermit.json"
    field_manager: str = "hermit"

    store_timeout: float = 5.0
    fetch_attempts: int = 3
    fetch_backoff: float = 0.1

    seed_bootstrap: Optional[Path] = None
    log_level: str = "INFO"

    sidecar: SidecarConfig = field(default_factory=SidecarConfig)


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


def _port(env: Mapping[str, str], key: str, default: int) -> int:
    value = _int(env, key, default)
    if not 0 < value < 65536:
        raise ValueError(f"{key} must be a TCP port, got {value}")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Read HERMIT_* variables into Settings. Unset variables keep their defaults."""
    env = os.environ if env is None else env

    sidecar = SidecarConfig(
        name=env.get("HERMIT_SIDECAR_NAME", "hermit"),
        image=env.get("HERMIT_SIDECAR_IMAGE", "envoyproxy/envoy:v1.24-latest"),
        config_mount=env.get("HERMIT_CONFIG_MOUNT", "/etc/envoy"),
        artifact_name=env.get("HERMIT_ARTIFACT_NAME", "envoy-config"),
        artifact_key=env.get("HERMIT_ARTIFACT_KEY", "envoy.yaml"),
        policy_volume=env.get("HERMIT_POLICY_VOLUME", "hermit-policy"),
        ingress_port=_port(env, "HERMIT_INGRESS_PORT", 80),
        admin_port=_port(env, "HERMIT_ADMIN_PORT", 8001),
        upstream_address=env.get("HERMIT_UPSTREAM_ADDRESS", "localhost"),
        upstream_port=_port(env, "HERMIT_UPSTREAM_PORT", 5678),
        wasm_path=env.get("HERMIT_WASM_PATH", "/etc/hermit.wasm"),
    )

    attempts = _int(env, "HERMIT_FETCH_ATTEMPTS", 3)
    if attempts < 1:
        raise ValueError("HERMIT_FETCH_ATTEMPTS must be at least 1")

    seed = env.get("HERMIT_SEED_BOOTSTRAP")

    return Settings(
        admission_host=env.get("HERMIT_ADMISSION_HOST", "0.0.0.0"),
        admission_port=_port(env, "HERMIT_ADMISSION_PORT", 8443),
        tls_cert=env.get("HERMIT_TLS_CERT") or None,
        tls_key=env.get("HERMIT_TLS_KEY") or None,
        discovery_address=env.get("HERMIT_DISCOVERY_ADDRESS", "[::]:18000"),
        discovery_workers=_int(env, "HERMIT_DISCOVERY_WORKERS", 10),
        annotation=env.get("HERMIT_ANNOTATION", "hermit.io/config"),
        default_policy=env.get("HERMIT_DEFAULT_POLICY", "hermit-config"),
        policy_key=env.get("HERMIT_POLICY_KEY", "hermit.json"),
        field_manager=env.get("HERMIT_FIELD_MANAGER", "hermit"),
        store_timeout=_float(env, "HERMIT_STORE_TIMEOUT", 5.0),
        fetch_attempts=attempts,
        fetch_backoff=_float(env, "HERMIT_FETCH_BACKOFF", 0.1),
        seed_bootstrap=Path(seed) if seed else None,
        log_level=env.get("HERMIT_LOG_LEVEL", "INFO").upper(),
        sidecar=sidecar,
    )
