"""Cluster session: identity, port and state of one k3s instance."""

from __future__ import annotations

import logging
import math
import shlex
from collections.abc import Callable
from datetime import datetime, timezone

from k3sbox.cluster.bootstrap import ENTRYPOINT_PATH, render_entrypoint
from k3sbox.cluster.ports import allocate_port
from k3sbox.cluster.state import CONFIG_DIR, DATA_DIR, StateBinding, bind_state
from k3sbox.config import Settings, get_settings
from k3sbox.shared.models import ContainerSpec, FileRef, ServiceSpec

logger = logging.getLogger(__name__)

CONFIG_MOUNT = "/cache/k3s"
KUBECONFIG_FILE = "k3s.yaml"
KUBE_CONFIG_PATH = "/.kube/config"

# Exit status of the kubeconfig wait loop when its deadline passes.
WAIT_EXPIRED_EXIT = 75

_BIND_ADDRESS = "$(ip route | grep src | awk '{print $NF}')"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def render_wait_script(path: str, *, interval: float, timeout: float | None = None) -> str:
    """Shell loop that blocks until ``path`` exists.

    Without ``timeout`` the loop runs until the caller cancels it.
    """
    notice = f'echo "{KUBECONFIG_FILE} not ready, is server started?. waiting.. " && sleep {interval:g}'
    if timeout is None:
        return f'while [ ! -f "{path}" ]; do {notice}; done'

    attempts = max(1, math.ceil(timeout / interval))
    return (
        f'i=0; while [ ! -f "{path}" ]; do '
        f'if [ "$i" -ge {attempts} ]; then echo "{KUBECONFIG_FILE} not ready after {timeout:g}s" >&2; '
        f"exit {WAIT_EXPIRED_EXIT}; fi; "
        f"{notice}; i=$((i+1)); done"
    )


class ClusterSession:
    """A named k3s cluster and the requests that operate on it.

    Every operation builds a fresh :class:`ContainerSpec`; nothing is sent to
    a container engine from here.
    """

    def __init__(
        self,
        name: str,
        port: int,
        state: StateBinding,
        container: ContainerSpec,
        *,
        settings: Settings,
        clock: Callable[[], str] = _now,
    ) -> None:
        self.name = name
        self.port = port
        self.state = state
        self.container = container
        self._settings = settings
        self._clock = clock

    @classmethod
    def create(
        cls,
        name: str,
        image: str | None = None,
        keep_state: bool | None = None,
        *,
        settings: Settings | None = None,
        port: int | None = None,
        allocate: Callable[[], int] = allocate_port,
        clock: Callable[[], str] = _now,
    ) -> ClusterSession:
        """Allocate a port, bind state and build the base server container.

        Args:
            name: Cluster name; also namespaces the cache volumes.
            image: k3s image reference (default from settings).
            keep_state: Keep runtime data across runs (not recommended).
            settings: Configuration; loaded from the environment if omitted.
            port: Re-use a known API server port instead of allocating one.
            allocate: Port allocator.
            clock: Source of cache-busting values.

        Raises:
            AllocationError: If no free port is available.
            ClusterNameError: If ``name`` cannot namespace a volume.
        """
        settings = settings or get_settings()
        image = image or settings.image
        keep_state = settings.keep_state if keep_state is None else keep_state

        state = bind_state(name, keep_state, prefix=settings.cache_prefix)
        if port is None:
            port = allocate()
            logger.info("first available port: %d", port)

        container = (
            ContainerSpec()
            .from_(image)
            .with_new_file(ENTRYPOINT_PATH, render_entrypoint(), permissions=0o755)
            .with_entrypoint(["entrypoint.sh"])
        )
        container = state.apply(container, cache_bust=clock()).with_exposed_port(port)
        logger.info("configured cluster %s (image=%s, port=%d, keep_state=%s)", name, image, port, keep_state)
        return cls(name, port, state, container, settings=settings, clock=clock)

    def server_command(self) -> str:
        parts = ["k3s", "server"]
        if self._settings.server_debug:
            parts.append("--debug")
        parts += [f"--https-listen-port={self.port}", "--bind-address", _BIND_ADDRESS]
        for component in self._settings.disabled_components:
            parts += ["--disable", component]
        parts.append("--egress-selector-mode=disabled")
        parts += [shlex.quote(arg) for arg in self._settings.extra_server_args]
        return " ".join(parts)

    def server(self) -> ServiceSpec:
        """Return the k3s server as a startable service. Does not block."""
        return self.container.as_service(
            ["sh", "-c", self.server_command()],
            use_entrypoint=True,
            insecure_root_capabilities=True,
        )

    def with_container(self, container: ContainerSpec) -> ClusterSession:
        """Replace the server container spec outright."""
        self.container = container
        return self

    def config(self, local: bool = False, *, timeout: float | None = None) -> FileRef:
        """Return the kubeconfig written by the server.

        Waits until the server has written ``k3s.yaml`` into the config
        volume. With ``local`` the server URL points at ``localhost``.

        Args:
            local: Rewrite the server authority to ``localhost:<port>``.
            timeout: Seconds to wait for the file; defaults to settings,
                where ``None`` waits until the caller cancels.
        """
        if timeout is None:
            timeout = self._settings.kubeconfig_wait_timeout
        wait = render_wait_script(
            f"{CONFIG_MOUNT}/{KUBECONFIG_FILE}",
            interval=self._settings.kubeconfig_poll_interval,
            timeout=timeout,
        )
        return (
            ContainerSpec()
            .from_(self._settings.helper_image)
            .with_env_variable("CACHE", self._clock())
            .with_mounted_cache(CONFIG_MOUNT, self.state.config_cache)
            .with_exec(["sh", "-c", wait])
            .with_exec(["cp", f"{CONFIG_MOUNT}/{KUBECONFIG_FILE}", KUBECONFIG_FILE])
            .with_(self._localize if local else _unchanged)
            .file(KUBECONFIG_FILE)
        )

    def reset_credentials(self) -> ContainerSpec:
        """Return a container that deletes the server's TLS and kubeconfig.

        Run after the server stops so a stale ``k3s.yaml`` is never served
        for a port the next server does not listen on.
        """
        return (
            ContainerSpec()
            .from_(self._settings.helper_image)
            .with_env_variable("CACHE", self._clock())
            .with_mounted_cache(CONFIG_DIR, self.state.config_cache)
            .with_mounted_cache(DATA_DIR, self.state.runtime_cache)
            .with_exec(self.state.wipe_steps()[0])
        )

    def _localize(self, spec: ContainerSpec) -> ContainerSpec:
        expr = f"s/https:.*:{self.port}/https:\\/\\/localhost:{self.port}/g"
        return spec.with_exec(["sed", "-i", expr, KUBECONFIG_FILE])

    def _with_kubeconfig(self, spec: ContainerSpec) -> ContainerSpec:
        return (
            spec.without_entrypoint()
            .with_mounted_cache(CONFIG_MOUNT, self.state.config_cache)
            .with_env_variable("CACHE", self._clock())
            .with_file(KUBE_CONFIG_PATH, self.config(local=False), permissions=0o600, owner=self._settings.kube_user)
        )

    def kubectl(self, args: str) -> ContainerSpec:
        """Return a container that runs ``kubectl <args>`` against the cluster.

        ``args`` is appended verbatim to a shell command line.
        """
        return (
            ContainerSpec()
            .from_(self._settings.kubectl_image)
            .with_(self._with_kubeconfig)
            .with_user(self._settings.kube_user)
            .with_exec(["sh", "-c", f"kubectl {args}"])
        )

    def k9s_url(self) -> str:
        version = self._settings.k9s_version
        archive = f"k9s_Linux_{self._settings.k9s_arch}.tar.gz"
        if version == "latest":
            return f"https://github.com/derailed/k9s/releases/latest/download/{archive}"
        return f"https://github.com/derailed/k9s/releases/download/{version}/{archive}"

    def kns(self) -> ContainerSpec:
        """Return an interactive k9s container for the cluster."""
        return (
            ContainerSpec()
            .from_(self._settings.k9s_image)
            .with_exec(["apk", "add", "--no-cache", "curl", "tar"])
            .with_exec(["sh", "-c", f"curl -L {self.k9s_url()} | tar -xz -C /usr/local/bin"])
            .with_(self._with_kubeconfig)
            .with_env_variable("KUBECONFIG", KUBE_CONFIG_PATH)
            .with_default_terminal_cmd(["k9s"])
        )


def _unchanged(spec: ContainerSpec) -> ContainerSpec:
    return spec
