"""Protocol interfaces for container engine dependency injection."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from k3sbox.shared.models import ContainerSpec, ExecResult, FileRef, ServiceHandle, ServiceSpec


@runtime_checkable
class ContainerEngine(Protocol):
    """Protocol for realizing container specs."""

    async def run(self, spec: ContainerSpec) -> ExecResult:
        """Run every exec step of ``spec`` to completion.

        Args:
            spec: Container to run.

        Returns:
            Exit status and combined output.

        Raises:
            ExecError: If a step exits non-zero
            EngineError: If the engine rejects the request
        """
        ...

    async def read_file(self, ref: FileRef) -> bytes:
        """Run ``ref.container`` and return the file it left at ``ref.path``.

        Raises:
            ExecError: If a step exits non-zero
            EngineError: If the file cannot be retrieved
        """
        ...

    async def start_service(self, service: ServiceSpec, *, name: str, port: int) -> ServiceHandle:
        """Start ``service`` detached and return its handle.

        Raises:
            EngineError: If the container cannot be started
        """
        ...

    async def stop_service(self, container_id: str) -> None:
        """Stop and remove a service container. Missing containers are ignored."""
        ...

    async def find_service(self, name: str) -> ServiceHandle | None:
        """Return the running service of cluster ``name``, if any."""
        ...

    async def prepare_terminal(self, spec: ContainerSpec) -> str:
        """Create an interactive container for ``spec`` and return its ID.

        The container is created but not started, so the caller can attach
        a terminal to it.
        """
        ...
