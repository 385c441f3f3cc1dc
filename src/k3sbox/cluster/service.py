"""Core service driving cluster sessions through a container engine."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from k3sbox.cluster.session import WAIT_EXPIRED_EXIT, ClusterSession
from k3sbox.engine.interfaces import ContainerEngine
from k3sbox.shared.enums import ClusterState
from k3sbox.shared.exceptions import ExecError, NotReadyError
from k3sbox.shared.models import ExecResult, ServiceHandle

logger = logging.getLogger(__name__)


class ClusterService:
    """Start, query and stop k3s clusters described by sessions."""

    def __init__(self, engine: ContainerEngine) -> None:
        self.engine = engine
        self._handles: dict[str, ServiceHandle] = {}

    def state(self, session: ClusterSession) -> ClusterState:
        if session.name in self._handles:
            return ClusterState.RUNNING
        return ClusterState.CONFIGURED

    async def start(self, session: ClusterSession) -> ServiceHandle:
        """Start the k3s server of ``session``; returns once the container runs."""
        logger.info("starting cluster %s on port %d", session.name, session.port)
        handle = await self.engine.start_service(session.server(), name=session.name, port=session.port)
        self._handles[session.name] = handle
        return handle

    async def attach(self, session: ClusterSession) -> ServiceHandle | None:
        """Adopt a server of the same name started by another process."""
        handle = await self.engine.find_service(session.name)
        if handle is not None:
            self._handles[session.name] = handle
        return handle

    async def stop(self, session: ClusterSession) -> None:
        """Remove the server container and delete its credentials.

        Cache volumes survive; the kubeconfig does not, so ``config`` blocks
        until the next server writes a fresh one.
        """
        handle = self._handles.pop(session.name, None) or await self.engine.find_service(session.name)
        if handle is None:
            logger.warning("cluster %s is not running", session.name)
            return
        await self.engine.stop_service(handle.container_id)
        await self.engine.run(session.reset_credentials())
        logger.info("stopped cluster %s", session.name)

    async def fetch_config(
        self,
        session: ClusterSession,
        *,
        local: bool = False,
        timeout: float | None = None,
    ) -> str:
        """Return the kubeconfig of ``session`` as text.

        Blocks until the server has written the file. Cancel the awaiting
        task to give up early, or pass ``timeout``.

        Raises:
            NotReadyError: If ``timeout`` passes before the file appears.
        """
        ref = session.config(local, timeout=timeout)
        try:
            data = await self.engine.read_file(ref)
        except ExecError as exc:
            if exc.exit_code == WAIT_EXPIRED_EXIT:
                raise NotReadyError(f"kubeconfig of cluster {session.name} not written in time") from exc
            raise
        return data.decode()

    async def write_config(
        self,
        session: ClusterSession,
        path: Path,
        *,
        local: bool = True,
        timeout: float | None = None,
    ) -> Path:
        """Fetch the kubeconfig and write it to ``path`` readable by the owner only."""
        text = await self.fetch_config(session, local=local, timeout=timeout)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        # O_CREAT leaves the mode of an existing file alone.
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(text)
        logger.info("wrote kubeconfig of cluster %s to %s", session.name, path)
        return path

    async def kubectl(self, session: ClusterSession, args: str) -> ExecResult:
        logger.info("kubectl %s (cluster %s)", args, session.name)
        return await self.engine.run(session.kubectl(args))

    async def kns(self, session: ClusterSession) -> str:
        """Prepare a k9s container and return its ID for attaching."""
        return await self.engine.prepare_terminal(session.kns())
