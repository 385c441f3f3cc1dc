"""Command-line entry point for k3sbox clusters."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import typing as typ
from pathlib import Path

from cyclopts import App, Parameter

from k3sbox.cluster.service import ClusterService
from k3sbox.cluster.session import ClusterSession
from k3sbox.config import Settings, get_settings
from k3sbox.engine.docker import DockerEngine
from k3sbox.shared.exceptions import K3sBoxError

logger = logging.getLogger(__name__)

app = App(name="k3sbox", help="Disposable k3s clusters in a container", version="0.1.0")

NameArg = typ.Annotated[str, Parameter(env_var="K3SBOX_NAME")]


def default_kubeconfig_path(name: str) -> Path:
    return Path.home() / ".kube" / f"k3sbox-{name}.yaml"


def _service(settings: Settings) -> ClusterService:
    return ClusterService(DockerEngine(poll_interval=settings.docker_poll_interval))


async def _attached_session(service: ClusterService, name: str, settings: Settings) -> ClusterSession:
    """Build a session for ``name``, re-using the port of a running server."""
    handle = await service.engine.find_service(name)
    port = handle.port if handle is not None else None
    session = ClusterSession.create(name, settings=settings, port=port)
    if handle is not None:
        await service.attach(session)
    return session


async def _up(
    name: str,
    image: str | None,
    keep_state: bool | None,
    kubeconfig: Path,
    timeout: float | None,
) -> int:
    settings = get_settings()
    service = _service(settings)
    handle = await service.engine.find_service(name)
    if handle is not None:
        session = ClusterSession.create(name, image, keep_state, settings=settings, port=handle.port)
        await service.attach(session)
        print(f"Cluster '{name}' already running on port {session.port}, reusing...")
    else:
        session = ClusterSession.create(name, image, keep_state, settings=settings)
        await service.start(session)
        print(f"Started cluster '{name}' on port {session.port}")

    path = await service.write_config(session, kubeconfig, local=True, timeout=timeout)
    print(f"export KUBECONFIG={path}")
    return 0


async def _config(name: str, local: bool, output: Path | None, timeout: float | None) -> int:
    settings = get_settings()
    service = _service(settings)
    session = await _attached_session(service, name, settings)
    if output is not None:
        await service.write_config(session, output, local=local, timeout=timeout)
        print(output)
    else:
        print(await service.fetch_config(session, local=local, timeout=timeout), end="")
    return 0


async def _kubectl(name: str, args: str) -> int:
    settings = get_settings()
    service = _service(settings)
    session = await _attached_session(service, name, settings)
    result = await service.kubectl(session, args)
    print(result.output, end="")
    return result.exit_code


async def _kns(name: str) -> str:
    settings = get_settings()
    service = _service(settings)
    session = await _attached_session(service, name, settings)
    return await service.kns(session)


async def _down(name: str) -> int:
    settings = get_settings()
    service = _service(settings)
    session = await _attached_session(service, name, settings)
    await service.stop(session)
    return 0


@app.command
def up(
    name: NameArg,
    *,
    image: str | None = None,
    keep_state: bool | None = None,
    kubeconfig: Path | None = None,
    timeout: float | None = None,
) -> int:
    """Start a cluster (or reuse a running one) and write a local kubeconfig.

    Args:
        name: Cluster name; also names the cache volumes.
        image: k3s image reference.
        keep_state: Keep runtime data from the previous run (not recommended).
        kubeconfig: Where to write the kubeconfig.
        timeout: Seconds to wait for the kubeconfig; waits forever if unset.
    """
    return _guarded(_up(name, image, keep_state, kubeconfig or default_kubeconfig_path(name), timeout))


@app.command
def config(
    name: NameArg,
    *,
    local: bool = False,
    output: Path | None = None,
    timeout: float | None = None,
) -> int:
    """Print or write the kubeconfig of a cluster.

    Args:
        name: Cluster name.
        local: Point the server URL at localhost.
        output: Write to this file instead of stdout.
        timeout: Seconds to wait for the kubeconfig; waits forever if unset.
    """
    return _guarded(_config(name, local, output, timeout))


@app.command
def kubectl(name: NameArg, *args: str) -> int:
    """Run kubectl against a cluster.

    Arguments are passed through verbatim; put '--' before kubectl flags.
    """
    return _guarded(_kubectl(name, " ".join(args)))


@app.command
def kns(name: NameArg) -> int:
    """Open k9s against a cluster."""
    try:
        container_id = asyncio.run(_kns(name))
    except K3sBoxError as exc:
        logger.error("%s", exc)
        return 1
    os.execvp("docker", ["docker", "start", "-ai", container_id])


@app.command
def down(name: NameArg) -> int:
    """Stop and remove the server container of a cluster. Cache volumes are kept."""
    return _guarded(_down(name))


def _guarded(coro: typ.Coroutine[typ.Any, typ.Any, int]) -> int:
    try:
        return asyncio.run(coro)
    except K3sBoxError as exc:
        logger.error("%s", exc)
        return 1


def main() -> int:
    """Entry point for the ``k3sbox`` console script."""
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return app()


if __name__ == "__main__":
    sys.exit(main())
