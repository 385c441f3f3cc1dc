"""Binding of cache volumes and scratch mounts to a named cluster."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from k3sbox.shared.exceptions import ClusterNameError
from k3sbox.shared.models import ContainerSpec

logger = logging.getLogger(__name__)

CONFIG_DIR = "/etc/rancher/k3s"
DATA_DIR = "/var/lib/rancher"
RUNTIME_ROOT = "/var/lib/rancher/k3s/"
KUBECONFIG_PATH = "/etc/rancher/k3s/k3s.yaml"
TLS_DIR = "/var/lib/rancher/k3s/server/tls"

SCRATCH_DIRS = ("/etc/lib/cni", "/var/lib/kubelet")
LOG_DIR = "/var/log"

# Regenerated on every construction: old certificates do not match a new port.
ALWAYS_WIPED = (TLS_DIR, KUBECONFIG_PATH)

_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]*\Z")


def cache_key(prefix: str, kind: str, name: str) -> str:
    """Return the volume name for one kind of cluster state."""
    return f"{prefix}_{kind}_{name}"


@dataclass(frozen=True, slots=True)
class StateBinding:
    """Durable volumes of one cluster and whether runtime data survives."""

    name: str
    config_cache: str
    runtime_cache: str
    keep_runtime_state: bool

    def wipe_steps(self) -> list[list[str]]:
        """Commands run before the cluster starts, in order."""
        steps = [["rm", "-rf", *ALWAYS_WIPED]]
        if not self.keep_runtime_state:
            steps.append(["rm", "-rf", RUNTIME_ROOT])
        return steps

    def apply(self, spec: ContainerSpec, *, cache_bust: str) -> ContainerSpec:
        """Mount this binding into ``spec`` and schedule the wipes.

        ``cache_bust`` changes on every call so the wipe steps are never
        replayed from an engine cache.
        """
        spec = spec.with_mounted_cache(CONFIG_DIR, self.config_cache)
        for path in SCRATCH_DIRS:
            spec = spec.with_mounted_temp(path)
        spec = spec.with_mounted_cache(DATA_DIR, self.runtime_cache).with_env_variable("CACHEBUST", cache_bust)
        for step in self.wipe_steps():
            spec = spec.with_exec(step)
        return spec.with_mounted_temp(LOG_DIR)


def bind_state(name: str, keep_state: bool = False, *, prefix: str = "k3s") -> StateBinding:
    """Derive the cache volumes for cluster ``name``.

    The same name always yields the same volumes, so a later run re-attaches
    to the kubeconfig and data of an earlier one.

    Raises:
        ClusterNameError: If ``name`` is not usable inside a volume name.
    """
    if not _NAME_RE.fullmatch(name):
        raise ClusterNameError(f"invalid cluster name {name!r}: use letters, digits, '_', '.' or '-'")

    if keep_state:
        logger.warning("keeping runtime state for cluster %s; stale node identity may break startup", name)

    return StateBinding(
        name=name,
        config_cache=cache_key(prefix, "config", name),
        runtime_cache=cache_key(prefix, "cache", name),
        keep_runtime_state=keep_state,
    )
