"""Enumerations used across k3sbox modules."""

from __future__ import annotations

from enum import Enum, unique


@unique
class MountKind(str, Enum):
    """How a path is backed inside a container."""

    CACHE = "cache"
    TEMP = "temp"


@unique
class ClusterState(str, Enum):
    """Lifecycle states of a cluster session."""

    CONFIGURED = "configured"
    RUNNING = "running"
