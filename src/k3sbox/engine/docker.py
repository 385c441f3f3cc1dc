"""Container engine implementation using the Docker SDK.

Cache mounts become named volumes, temp mounts become tmpfs, and the exec
steps of a spec run as one ``/bin/sh -c`` script in a single container.
"""

from __future__ import annotations

import asyncio
import io
import logging
import posixpath
import shlex
import tarfile
from functools import partial
from pathlib import PurePosixPath
from typing import Any, cast

from docker.errors import APIError, DockerException, ImageNotFound, NotFound

import docker
from k3sbox.shared.enums import MountKind
from k3sbox.shared.exceptions import EngineError, ExecError
from k3sbox.shared.models import ContainerSpec, ExecResult, FileEntry, FileRef, ServiceHandle, ServiceSpec

logger = logging.getLogger(__name__)

CLUSTER_LABEL = "k3sbox.cluster"
PORT_LABEL = "k3sbox.port"
_SHELL = ["/bin/sh", "-c"]
_OUTPUT_TAIL = 2000


class DockerEngine:
    """Docker-based implementation of the ContainerEngine protocol."""

    def __init__(self, *, poll_interval: float = 0.5, client: Any | None = None) -> None:
        self._poll_interval = poll_interval
        self._docker: Any | None = client

    def _client(self) -> Any:
        if self._docker is None:
            try:
                self._docker = cast(Any, docker).from_env()
            except DockerException as exc:
                raise EngineError(f"cannot reach docker daemon: {exc}") from exc
        return self._docker

    async def run(self, spec: ContainerSpec) -> ExecResult:
        """Run the exec steps of ``spec`` and remove the container.

        Raises:
            ExecError: If the script exits non-zero.
            EngineError: If Docker rejects the request.
        """
        container, result = await self._execute(spec)
        await self._remove(container)
        return result

    async def read_file(self, ref: FileRef) -> bytes:
        """Run ``ref.container`` and copy ``ref.path`` out of it.

        Raises:
            ExecError: If the script exits non-zero.
            EngineError: If the file cannot be copied.
        """
        container, _ = await self._execute(ref.container)
        path = posixpath.join(ref.container.workdir, ref.path)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(_extract_file, container, path))
        except APIError as exc:
            raise EngineError(f"failed to copy {path} out of {container.id[:12]}: {exc}") from exc
        finally:
            await self._remove(container)

    async def start_service(self, service: ServiceSpec, *, name: str, port: int) -> ServiceHandle:
        """Run the setup steps, then start the service container detached.

        Raises:
            ExecError: If a setup step exits non-zero.
            EngineError: If the service container cannot be started.
        """
        spec = service.container
        if spec.steps:
            await self.run(spec)

        if service.use_entrypoint:
            entrypoint = list(spec.entrypoint) if spec.entrypoint is not None else None
            command: list[str] | None = list(service.args)
        else:
            entrypoint, command = list(service.args), None

        labels = dict(spec.labels)
        labels.update({CLUSTER_LABEL: name, PORT_LABEL: str(port)})
        kwargs = self._create_kwargs(spec, entrypoint=entrypoint, command=command, user=spec.user)
        kwargs.update(
            {
                "labels": labels,
                "privileged": service.insecure_root_capabilities,
                "ports": {f"{p}/tcp": p for p in spec.exposed_ports},
            }
        )

        container = await self._create(spec, kwargs)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, container.start)
        except APIError as exc:
            await self._remove(container)
            raise EngineError(f"failed to start service for cluster {name}: {exc}") from exc
        except asyncio.CancelledError:
            await self._remove(container)
            raise

        logger.info("started service %s (%s) on port %d", name, container.id[:12], port)
        return ServiceHandle(container_id=container.id, name=name, port=port)

    async def stop_service(self, container_id: str) -> None:
        """Stop and remove a service container.

        Raises:
            EngineError: If Docker fails to remove it.
        """
        loop = asyncio.get_running_loop()
        try:
            container = await loop.run_in_executor(None, partial(self._client().containers.get, container_id))
            await loop.run_in_executor(None, partial(container.remove, force=True))
            logger.info("stopped service container %s", container_id[:12])
        except NotFound:
            logger.warning("service container %s already removed", container_id[:12])
        except APIError as exc:
            raise EngineError(f"failed to stop service container {container_id[:12]}: {exc}") from exc

    async def find_service(self, name: str) -> ServiceHandle | None:
        loop = asyncio.get_running_loop()
        try:
            containers = await loop.run_in_executor(
                None,
                partial(
                    self._client().containers.list,
                    filters={"label": f"{CLUSTER_LABEL}={name}", "status": "running"},
                ),
            )
        except APIError as exc:
            raise EngineError(f"failed to list services of cluster {name}: {exc}") from exc

        for container in containers:
            port = container.labels.get(PORT_LABEL)
            if port is not None:
                return ServiceHandle(container_id=container.id, name=name, port=int(port))
        return None

    async def prepare_terminal(self, spec: ContainerSpec) -> str:
        """Create a TTY container that runs the steps, then the terminal command.

        Raises:
            EngineError: If the spec has no terminal command or Docker fails.
        """
        if not spec.terminal_cmd:
            raise EngineError("container spec has no default terminal command")

        script = _render_script(spec, tail=f"exec {shlex.join(spec.terminal_cmd)}")
        kwargs = self._create_kwargs(spec, entrypoint=_SHELL, command=[script], user=_steps_user(spec))
        kwargs.update({"tty": True, "stdin_open": True})
        container = await self._create(spec, kwargs)
        logger.info("prepared terminal container %s", container.id[:12])
        return cast(str, container.id)

    # ── internals ───────────────────────────────────────────────

    async def _execute(self, spec: ContainerSpec) -> tuple[Any, ExecResult]:
        """Create, start and wait for a container running the spec's steps.

        The container is left in place for the caller to inspect and remove.
        """
        script = _render_script(spec)
        kwargs = self._create_kwargs(spec, entrypoint=_SHELL, command=[script], user=_steps_user(spec))
        container = await self._create(spec, kwargs)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, container.start)
            exit_code = await self._wait_exit(container)
            logs = await loop.run_in_executor(None, partial(container.logs, stdout=True, stderr=True))
        except APIError as exc:
            await self._remove(container)
            raise EngineError(f"failed to run container {container.id[:12]}: {exc}") from exc
        except asyncio.CancelledError:
            logger.info("cancelled; removing container %s", container.id[:12])
            await self._remove(container)
            raise

        output = logs.decode(errors="replace")
        if exit_code != 0:
            await self._remove(container)
            raise ExecError(
                f"{spec.image} exited with status {exit_code}: {output[-_OUTPUT_TAIL:].strip()}",
                exit_code=exit_code,
                output=output,
            )
        return container, ExecResult(exit_code=exit_code, output=output)

    async def _wait_exit(self, container: Any) -> int:
        """Poll until ``container`` exits."""
        loop = asyncio.get_running_loop()
        while True:
            await loop.run_in_executor(None, container.reload)
            if container.status in ("exited", "dead"):
                return int(container.attrs.get("State", {}).get("ExitCode", -1))
            await asyncio.sleep(self._poll_interval)

    async def _create(self, spec: ContainerSpec, kwargs: dict[str, Any]) -> Any:
        """Create a container for ``spec`` and copy its files in."""
        if spec.image is None:
            raise EngineError("container spec has no image")

        archive = _build_archive(await self._materialize(spec.files)) if spec.files else None
        loop = asyncio.get_running_loop()
        await self._ensure_image(spec.image)
        try:
            container = await loop.run_in_executor(
                None,
                partial(self._client().containers.create, spec.image, **kwargs),
            )
        except APIError as exc:
            raise EngineError(f"failed to create container from {spec.image}: {exc}") from exc

        if archive is not None:
            try:
                await loop.run_in_executor(None, partial(container.put_archive, "/", archive))
            except APIError as exc:
                await self._remove(container)
                raise EngineError(f"failed to copy files into {container.id[:12]}: {exc}") from exc
            except asyncio.CancelledError:
                await self._remove(container)
                raise

        logger.debug("created container %s from %s", container.id[:12], spec.image)
        return container

    async def _materialize(self, files: tuple[FileEntry, ...]) -> list[tuple[FileEntry, bytes]]:
        out = []
        for entry in files:
            if entry.source is not None:
                data = await self.read_file(entry.source)
            else:
                data = (entry.contents or "").encode()
            out.append((entry, data))
        return out

    async def _ensure_image(self, image: str) -> None:
        loop = asyncio.get_running_loop()
        client = self._client()
        try:
            await loop.run_in_executor(None, partial(client.images.get, image))
        except ImageNotFound:
            logger.info("pulling image %s", image)
            try:
                await loop.run_in_executor(None, partial(client.images.pull, image))
            except APIError as exc:
                raise EngineError(f"failed to pull image {image}: {exc}") from exc
        except APIError as exc:
            raise EngineError(f"failed to inspect image {image}: {exc}") from exc

    async def _remove(self, container: Any) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, partial(container.remove, force=True))
        except NotFound:
            logger.debug("container %s already removed", container.id[:12])
        except APIError as exc:
            logger.warning("failed to remove container %s: %s", container.id[:12], exc)

    def _create_kwargs(
        self,
        spec: ContainerSpec,
        *,
        entrypoint: list[str] | None,
        command: list[str] | None,
        user: str | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "command": command,
            "environment": spec.env_dict(),
            "working_dir": spec.workdir,
            "labels": dict(spec.labels),
            "volumes": {
                m.cache_key: {"bind": m.path, "mode": "rw"} for m in spec.mounts if m.kind is MountKind.CACHE
            },
            "tmpfs": {m.path: "" for m in spec.mounts if m.kind is MountKind.TEMP},
        }
        if entrypoint is not None:
            kwargs["entrypoint"] = entrypoint
        if user is not None:
            kwargs["user"] = user
        return kwargs


def _steps_user(spec: ContainerSpec) -> str | None:
    """Return the single user every step runs as.

    The steps share one container, so a user switch between steps cannot be
    honoured.
    """
    users = {step.user for step in spec.steps}
    if len(users) > 1:
        raise EngineError(f"steps of {spec.image} switch users {sorted(map(str, users))}; not supported")
    return users.pop() if users else spec.user


def _render_script(spec: ContainerSpec, *, tail: str | None = None) -> str:
    lines = ["set -e", *(shlex.join(step.args) for step in spec.steps)]
    if tail is not None:
        lines.append(tail)
    return "\n".join(lines)


def _build_archive(entries: list[tuple[FileEntry, bytes]]) -> bytes:
    """Pack files into a tar rooted at ``/``, creating parent directories."""
    buf = io.BytesIO()
    seen: set[str] = set()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for entry, data in entries:
            rel = PurePosixPath(entry.path.lstrip("/"))
            for parent in reversed(rel.parents[:-1]):
                if str(parent) in seen:
                    continue
                seen.add(str(parent))
                dir_info = tarfile.TarInfo(str(parent))
                dir_info.type = tarfile.DIRTYPE
                dir_info.mode = 0o755
                tar.addfile(dir_info)

            info = tarfile.TarInfo(str(rel))
            info.size = len(data)
            info.mode = entry.permissions
            if entry.owner is not None and entry.owner.isdigit():
                info.uid = info.gid = int(entry.owner)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _extract_file(container: Any, path: str) -> bytes:
    stream, _ = container.get_archive(path)
    raw = b"".join(stream)
    with tarfile.open(fileobj=io.BytesIO(raw)) as tar:
        member = tar.next()
        if member is None:
            raise EngineError(f"{path} is empty in container {container.id[:12]}")
        fh = tar.extractfile(member)
        if fh is None:
            raise EngineError(f"{path} is not a regular file in container {container.id[:12]}")
        return fh.read()
