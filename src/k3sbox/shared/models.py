"""Frozen Pydantic models describing container execution requests.

A :class:`ContainerSpec` is an immutable value. Every ``with_*`` builder
returns a new spec, so a base spec can be shared by several derived
requests without any of them observing the others' changes.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence

from pydantic import BaseModel

from k3sbox.shared.enums import MountKind


class EnvVar(BaseModel):
    """A single environment variable."""

    model_config = {"frozen": True}

    name: str
    value: str


class Mount(BaseModel):
    """A cache volume or scratch mount at ``path``."""

    model_config = {"frozen": True}

    path: str
    kind: MountKind
    cache_key: str | None = None


class ExecStep(BaseModel):
    """A command run while building the container, as ``user``."""

    model_config = {"frozen": True}

    args: tuple[str, ...]
    user: str | None = None


class FileEntry(BaseModel):
    """A file placed into the container before any step runs.

    Exactly one of ``contents`` or ``source`` is set.
    """

    model_config = {"frozen": True}

    path: str
    contents: str | None = None
    source: FileRef | None = None
    permissions: int = 0o644
    owner: str | None = None


class FileRef(BaseModel):
    """A file produced at ``path`` by running ``container``."""

    model_config = {"frozen": True}

    container: ContainerSpec
    path: str


class ContainerSpec(BaseModel):
    """Declarative description of a container and the steps to run in it."""

    model_config = {"frozen": True}

    image: str | None = None
    # None keeps the image default, an empty tuple clears it.
    entrypoint: tuple[str, ...] | None = None
    env: tuple[EnvVar, ...] = ()
    mounts: tuple[Mount, ...] = ()
    files: tuple[FileEntry, ...] = ()
    steps: tuple[ExecStep, ...] = ()
    user: str | None = None
    workdir: str = "/"
    exposed_ports: tuple[int, ...] = ()
    labels: tuple[tuple[str, str], ...] = ()
    terminal_cmd: tuple[str, ...] | None = None

    def from_(self, image: str) -> ContainerSpec:
        return self.model_copy(update={"image": image})

    def with_entrypoint(self, args: Sequence[str]) -> ContainerSpec:
        return self.model_copy(update={"entrypoint": tuple(args)})

    def without_entrypoint(self) -> ContainerSpec:
        return self.model_copy(update={"entrypoint": ()})

    def with_env_variable(self, name: str, value: str) -> ContainerSpec:
        env = tuple(e for e in self.env if e.name != name) + (EnvVar(name=name, value=value),)
        return self.model_copy(update={"env": env})

    def with_mounted_cache(self, path: str, cache_key: str) -> ContainerSpec:
        mount = Mount(path=path, kind=MountKind.CACHE, cache_key=cache_key)
        return self.model_copy(update={"mounts": self._replace_mount(mount)})

    def with_mounted_temp(self, path: str) -> ContainerSpec:
        mount = Mount(path=path, kind=MountKind.TEMP)
        return self.model_copy(update={"mounts": self._replace_mount(mount)})

    def with_new_file(self, path: str, contents: str, *, permissions: int = 0o644) -> ContainerSpec:
        entry = FileEntry(path=path, contents=contents, permissions=permissions)
        return self.model_copy(update={"files": self._replace_file(entry)})

    def with_file(
        self,
        path: str,
        source: FileRef,
        *,
        permissions: int = 0o644,
        owner: str | None = None,
    ) -> ContainerSpec:
        entry = FileEntry(path=path, source=source, permissions=permissions, owner=owner)
        return self.model_copy(update={"files": self._replace_file(entry)})

    def with_exec(self, args: Sequence[str]) -> ContainerSpec:
        step = ExecStep(args=tuple(args), user=self.user)
        return self.model_copy(update={"steps": self.steps + (step,)})

    def with_user(self, user: str) -> ContainerSpec:
        return self.model_copy(update={"user": user})

    def with_workdir(self, path: str) -> ContainerSpec:
        return self.model_copy(update={"workdir": path})

    def with_exposed_port(self, port: int) -> ContainerSpec:
        if port in self.exposed_ports:
            return self
        return self.model_copy(update={"exposed_ports": self.exposed_ports + (port,)})

    def with_label(self, name: str, value: str) -> ContainerSpec:
        labels = tuple(kv for kv in self.labels if kv[0] != name) + ((name, value),)
        return self.model_copy(update={"labels": labels})

    def with_default_terminal_cmd(self, args: Sequence[str]) -> ContainerSpec:
        return self.model_copy(update={"terminal_cmd": tuple(args)})

    def with_(self, fn: Callable[[ContainerSpec], ContainerSpec]) -> ContainerSpec:
        """Apply a conditional builder step, keeping the chain readable."""
        return fn(self)

    def file(self, path: str) -> FileRef:
        return FileRef(container=self, path=path)

    def as_service(
        self,
        args: Sequence[str],
        *,
        use_entrypoint: bool = False,
        insecure_root_capabilities: bool = False,
    ) -> ServiceSpec:
        return ServiceSpec(
            container=self,
            args=tuple(args),
            use_entrypoint=use_entrypoint,
            insecure_root_capabilities=insecure_root_capabilities,
        )

    def env_dict(self) -> dict[str, str]:
        return {e.name: e.value for e in self.env}

    def mount_at(self, path: str) -> Mount | None:
        for mount in self.mounts:
            if mount.path == path:
                return mount
        return None

    def _replace_mount(self, mount: Mount) -> tuple[Mount, ...]:
        return tuple(m for m in self.mounts if m.path != mount.path) + (mount,)

    def _replace_file(self, entry: FileEntry) -> tuple[FileEntry, ...]:
        return tuple(f for f in self.files if f.path != entry.path) + (entry,)


class ServiceSpec(BaseModel):
    """A container started as a long-lived service."""

    model_config = {"frozen": True}

    container: ContainerSpec
    args: tuple[str, ...]
    use_entrypoint: bool = False
    insecure_root_capabilities: bool = False


class ServiceHandle(BaseModel):
    """A started service container."""

    model_config = {"frozen": True}

    container_id: str
    name: str
    port: int


class ExecResult(BaseModel):
    """Outcome of running a container spec to completion."""

    model_config = {"frozen": True}

    exit_code: int
    output: str = ""


FileEntry.model_rebuild()
FileRef.model_rebuild()
ContainerSpec.model_rebuild()
