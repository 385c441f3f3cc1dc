"""Hierarchical exception types for k3sbox."""

from __future__ import annotations


class K3sBoxError(Exception):
    """Base exception for all k3sbox errors."""


# ── Provisioning ────────────────────────────────────────────────


class AllocationError(K3sBoxError):
    """No free TCP port could be obtained from the OS."""


class ClusterNameError(K3sBoxError, ValueError):
    """Cluster name cannot be used to namespace cache volumes."""


class NotReadyError(K3sBoxError):
    """Kubeconfig did not appear before the wait deadline."""


# ── Engine ──────────────────────────────────────────────────────


class EngineError(K3sBoxError):
    """Container engine rejected or failed a request."""


class ExecError(EngineError):
    """An exec step exited with a non-zero status."""

    def __init__(self, message: str, *, exit_code: int, output: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output
