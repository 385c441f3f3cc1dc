"""Centralised configuration via Pydantic Settings."""

from __future__ import annotations

import platform

from pydantic import Field
from pydantic_settings import BaseSettings

_ARCH_ALIASES = {"x86_64": "amd64", "amd64": "amd64", "aarch64": "arm64", "arm64": "arm64"}


def default_arch() -> str:
    """Map the host machine to a k9s release architecture."""
    return _ARCH_ALIASES.get(platform.machine().lower(), "amd64")


class Settings(BaseSettings):
    """Application-wide configuration loaded from environment variables."""

    model_config = {"env_prefix": "K3SBOX_", "frozen": True}

    # Cluster
    image: str = "rancher/k3s:latest"
    cache_prefix: str = "k3s"
    keep_state: bool = False
    # Add-ons switched off with ``--disable``
    disabled_components: list[str] = ["traefik", "metrics-server"]
    server_debug: bool = True
    extra_server_args: list[str] = []

    # Kubeconfig
    helper_image: str = "alpine"
    kubeconfig_poll_interval: float = 0.5
    # Seconds to wait for k3s.yaml; None waits until the caller cancels.
    kubeconfig_wait_timeout: float | None = None

    # Kubectl
    kubectl_image: str = "bitnami/kubectl"
    kube_user: str = "1001"

    # K9s
    k9s_image: str = "alpine:latest"
    k9s_version: str = "latest"
    k9s_arch: str = Field(default_factory=default_arch)

    # Docker
    docker_poll_interval: float = 0.5

    # Logging
    log_level: str = "INFO"


def get_settings() -> Settings:
    """Factory — allows overriding in tests."""
    return Settings()
