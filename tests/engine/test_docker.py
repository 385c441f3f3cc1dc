"""Tests for DockerEngine."""

from __future__ import annotations

import asyncio
import io
import tarfile
import threading
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from k3sbox.engine.docker import CLUSTER_LABEL, PORT_LABEL, DockerEngine, _build_archive
from k3sbox.shared.exceptions import EngineError, ExecError
from k3sbox.shared.models import ContainerSpec, FileEntry


def _tar_of(name: str, data: bytes) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        info = tarfile.TarInfo(name)
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


@pytest.fixture
def mock_container() -> MagicMock:
    c = MagicMock()
    c.id = "abc123def456"
    c.status = "exited"
    c.attrs = {"State": {"ExitCode": 0}}
    c.logs.return_value = b"ok\n"
    c.get_archive.return_value = (iter([_tar_of("k3s.yaml", b"apiVersion: v1\n")]), {})
    c.labels = {CLUSTER_LABEL: "demo", PORT_LABEL: "40123"}
    return c


@pytest.fixture
def mock_docker(mock_container: MagicMock) -> MagicMock:
    client = MagicMock()
    client.containers.create.return_value = mock_container
    client.containers.get.return_value = mock_container
    client.containers.list.return_value = [mock_container]
    return client


@pytest.fixture
def engine(mock_docker: MagicMock) -> DockerEngine:
    return DockerEngine(poll_interval=0.01, client=mock_docker)


@pytest.fixture
def spec() -> ContainerSpec:
    return (
        ContainerSpec()
        .from_("alpine")
        .with_env_variable("CACHE", "t0")
        .with_mounted_cache("/cache/k3s", "k3s_config_demo")
        .with_mounted_temp("/var/log")
        .with_exec(["sh", "-c", "echo hi"])
        .with_exec(["cp", "/cache/k3s/k3s.yaml", "k3s.yaml"])
    )


class TestRun:
    async def test_run_success(self, engine: DockerEngine, mock_docker: MagicMock, spec: ContainerSpec) -> None:
        result = await engine.run(spec)

        assert result.exit_code == 0
        assert result.output == "ok\n"
        args, kwargs = mock_docker.containers.create.call_args
        assert args == ("alpine",)
        assert kwargs["entrypoint"] == ["/bin/sh", "-c"]
        assert kwargs["command"] == ["set -e\nsh -c 'echo hi'\ncp /cache/k3s/k3s.yaml k3s.yaml"]
        assert kwargs["environment"] == {"CACHE": "t0"}
        assert kwargs["volumes"] == {"k3s_config_demo": {"bind": "/cache/k3s", "mode": "rw"}}
        assert kwargs["tmpfs"] == {"/var/log": ""}

    async def test_run_removes_container(
        self, engine: DockerEngine, mock_container: MagicMock, spec: ContainerSpec
    ) -> None:
        await engine.run(spec)
        mock_container.start.assert_called_once()
        mock_container.remove.assert_called_once_with(force=True)

    async def test_run_nonzero_exit(
        self, engine: DockerEngine, mock_container: MagicMock, spec: ContainerSpec
    ) -> None:
        mock_container.attrs = {"State": {"ExitCode": 3}}
        mock_container.logs.return_value = b"boom"

        with pytest.raises(ExecError, match="status 3") as info:
            await engine.run(spec)
        assert info.value.exit_code == 3
        assert info.value.output == "boom"
        mock_container.remove.assert_called_once_with(force=True)

    async def test_run_create_api_error(
        self, engine: DockerEngine, mock_docker: MagicMock, spec: ContainerSpec
    ) -> None:
        mock_docker.containers.create.side_effect = APIError("no space")

        with pytest.raises(EngineError, match="failed to create"):
            await engine.run(spec)

    async def test_pulls_missing_image(
        self, engine: DockerEngine, mock_docker: MagicMock, spec: ContainerSpec
    ) -> None:
        mock_docker.images.get.side_effect = ImageNotFound("missing")

        await engine.run(spec)

        mock_docker.images.pull.assert_called_once_with("alpine")

    async def test_pull_failure(self, engine: DockerEngine, mock_docker: MagicMock, spec: ContainerSpec) -> None:
        mock_docker.images.get.side_effect = ImageNotFound("missing")
        mock_docker.images.pull.side_effect = APIError("registry unreachable")

        with pytest.raises(EngineError, match="failed to pull"):
            await engine.run(spec)

    async def test_mixed_users_rejected(self, engine: DockerEngine) -> None:
        spec = ContainerSpec().from_("alpine").with_exec(["id"]).with_user("1001").with_exec(["id"])

        with pytest.raises(EngineError, match="switch users"):
            await engine.run(spec)

    async def test_steps_run_as_their_user(self, engine: DockerEngine, mock_docker: MagicMock) -> None:
        spec = ContainerSpec().from_("bitnami/kubectl").with_user("1001").with_exec(["kubectl", "version"])

        await engine.run(spec)

        assert mock_docker.containers.create.call_args.kwargs["user"] == "1001"

    async def test_waits_until_exit(
        self, engine: DockerEngine, mock_container: MagicMock, spec: ContainerSpec
    ) -> None:
        states = iter(["running", "running", "exited"])

        def _reload() -> None:
            mock_container.status = next(states)

        mock_container.reload.side_effect = _reload

        await engine.run(spec)

        assert mock_container.reload.call_count == 3

    async def test_cancel_removes_container(
        self, engine: DockerEngine, mock_container: MagicMock, spec: ContainerSpec
    ) -> None:
        mock_container.status = "running"

        task = asyncio.create_task(engine.run(spec))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        mock_container.remove.assert_called_with(force=True)

    async def test_cancel_during_start_removes_container(
        self, engine: DockerEngine, mock_container: MagicMock, spec: ContainerSpec
    ) -> None:
        gate = threading.Event()
        mock_container.start.side_effect = lambda: gate.wait(5)

        task = asyncio.create_task(engine.run(spec))
        await asyncio.sleep(0.05)
        task.cancel()

        try:
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            gate.set()
        mock_container.remove.assert_called_once_with(force=True)
        mock_container.reload.assert_not_called()

    async def test_cancel_during_copy_in_removes_container(
        self, engine: DockerEngine, mock_container: MagicMock
    ) -> None:
        gate = threading.Event()
        mock_container.put_archive.side_effect = lambda *args: gate.wait(5)
        target = ContainerSpec().from_("alpine").with_new_file("/etc/motd", "hi\n").with_exec(["cat", "/etc/motd"])

        task = asyncio.create_task(engine.run(target))
        await asyncio.sleep(0.05)
        task.cancel()

        try:
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            gate.set()
        mock_container.remove.assert_called_once_with(force=True)
        mock_container.start.assert_not_called()


class TestReadFile:
    async def test_read_file(self, engine: DockerEngine, mock_container: MagicMock, spec: ContainerSpec) -> None:
        data = await engine.read_file(spec.file("k3s.yaml"))

        assert data == b"apiVersion: v1\n"
        mock_container.get_archive.assert_called_once_with("/k3s.yaml")
        mock_container.remove.assert_called_once_with(force=True)

    async def test_read_file_missing(
        self, engine: DockerEngine, mock_container: MagicMock, spec: ContainerSpec
    ) -> None:
        mock_container.get_archive.side_effect = NotFound("no such file")

        with pytest.raises(EngineError, match="failed to copy"):
            await engine.read_file(spec.file("k3s.yaml"))
        mock_container.remove.assert_called_once_with(force=True)

    async def test_file_from_ref_is_copied_in(
        self, engine: DockerEngine, mock_docker: MagicMock, mock_container: MagicMock, spec: ContainerSpec
    ) -> None:
        target = (
            ContainerSpec()
            .from_("bitnami/kubectl")
            .with_file("/.kube/config", spec.file("k3s.yaml"), permissions=0o600, owner="1001")
            .with_user("1001")
            .with_exec(["kubectl", "get", "pods"])
        )

        await engine.run(target)

        path, archive = mock_container.put_archive.call_args.args
        assert path == "/"
        with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
            member = tar.getmember(".kube/config")
            assert member.mode == 0o600
            assert member.uid == 1001
            assert tar.extractfile(member).read() == b"apiVersion: v1\n"  # type: ignore[union-attr]


class TestServices:
    async def test_start_service(
        self, engine: DockerEngine, mock_docker: MagicMock, mock_container: MagicMock
    ) -> None:
        spec = (
            ContainerSpec()
            .from_("rancher/k3s")
            .with_new_file("/usr/bin/entrypoint.sh", "#!/bin/sh\nexec \"$@\"\n", permissions=0o755)
            .with_entrypoint(["entrypoint.sh"])
            .with_exec(["rm", "-rf", "/var/lib/rancher/k3s/"])
            .with_exposed_port(40123)
        )
        service = spec.as_service(["sh", "-c", "k3s server"], use_entrypoint=True, insecure_root_capabilities=True)

        handle = await engine.start_service(service, name="demo", port=40123)

        assert handle.container_id == "abc123def456"
        assert handle.port == 40123
        setup_kwargs, service_kwargs = (c.kwargs for c in mock_docker.containers.create.call_args_list)
        assert setup_kwargs["entrypoint"] == ["/bin/sh", "-c"]
        assert service_kwargs["entrypoint"] == ["entrypoint.sh"]
        assert service_kwargs["command"] == ["sh", "-c", "k3s server"]
        assert service_kwargs["privileged"] is True
        assert service_kwargs["ports"] == {"40123/tcp": 40123}
        assert service_kwargs["labels"] == {CLUSTER_LABEL: "demo", PORT_LABEL: "40123"}

    async def test_start_service_without_entrypoint(self, engine: DockerEngine, mock_docker: MagicMock) -> None:
        service = ContainerSpec().from_("nginx").as_service(["nginx", "-g", "daemon off;"])

        await engine.start_service(service, name="web", port=8080)

        kwargs = mock_docker.containers.create.call_args.kwargs
        assert kwargs["entrypoint"] == ["nginx", "-g", "daemon off;"]
        assert kwargs["command"] is None

    async def test_start_failure(self, engine: DockerEngine, mock_container: MagicMock) -> None:
        mock_container.start.side_effect = APIError("port already allocated")
        service = ContainerSpec().from_("rancher/k3s").as_service(["k3s"], use_entrypoint=True)

        with pytest.raises(EngineError, match="failed to start service"):
            await engine.start_service(service, name="demo", port=40123)
        mock_container.remove.assert_called_once_with(force=True)

    async def test_cancel_during_service_start_removes_container(
        self, engine: DockerEngine, mock_container: MagicMock
    ) -> None:
        gate = threading.Event()
        mock_container.start.side_effect = lambda: gate.wait(5)
        service = ContainerSpec().from_("rancher/k3s").as_service(["k3s"], use_entrypoint=True)

        task = asyncio.create_task(engine.start_service(service, name="demo", port=40123))
        await asyncio.sleep(0.05)
        task.cancel()

        try:
            with pytest.raises(asyncio.CancelledError):
                await task
        finally:
            gate.set()
        mock_container.remove.assert_called_once_with(force=True)

    async def test_stop_service(self, engine: DockerEngine, mock_container: MagicMock) -> None:
        await engine.stop_service("abc123def456")
        mock_container.remove.assert_called_once_with(force=True)

    async def test_stop_service_not_found(self, engine: DockerEngine, mock_docker: MagicMock) -> None:
        mock_docker.containers.get.side_effect = NotFound("gone")

        # Should not raise, just logs a warning
        await engine.stop_service("missing")

    async def test_find_service(self, engine: DockerEngine, mock_docker: MagicMock) -> None:
        handle = await engine.find_service("demo")

        assert handle is not None
        assert handle.port == 40123
        mock_docker.containers.list.assert_called_once_with(
            filters={"label": f"{CLUSTER_LABEL}=demo", "status": "running"}
        )

    async def test_find_service_none(self, engine: DockerEngine, mock_docker: MagicMock) -> None:
        mock_docker.containers.list.return_value = []
        assert await engine.find_service("demo") is None


class TestPrepareTerminal:
    async def test_prepare_terminal(
        self, engine: DockerEngine, mock_docker: MagicMock, mock_container: MagicMock
    ) -> None:
        spec = ContainerSpec().from_("alpine").with_exec(["apk", "add", "curl"]).with_default_terminal_cmd(["k9s"])

        container_id = await engine.prepare_terminal(spec)

        assert container_id == "abc123def456"
        kwargs = mock_docker.containers.create.call_args.kwargs
        assert kwargs["command"] == ["set -e\napk add curl\nexec k9s"]
        assert kwargs["tty"] is True
        assert kwargs["stdin_open"] is True
        mock_container.start.assert_not_called()

    async def test_requires_terminal_cmd(self, engine: DockerEngine) -> None:
        with pytest.raises(EngineError, match="terminal command"):
            await engine.prepare_terminal(ContainerSpec().from_("alpine"))


class TestBuildArchive:
    def test_creates_parent_dirs(self) -> None:
        entry = FileEntry(path="/usr/bin/entrypoint.sh", contents="x", permissions=0o755)
        archive = _build_archive([(entry, b"x")])

        with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
            names = tar.getnames()
            assert names == ["usr", "usr/bin", "usr/bin/entrypoint.sh"]
            assert tar.getmember("usr/bin/entrypoint.sh").mode == 0o755
