"""Entrypoint shim that prepares cgroup v2 nesting before starting k3s.

k3s evacuates the root cgroup itself only when it runs as PID 1. Inside a
k3sbox container it does not, so the shim does it and then ``exec``s the
real command.
"""

from __future__ import annotations

from dataclasses import dataclass

ENTRYPOINT_PATH = "/usr/bin/entrypoint.sh"
CGROUP_ROOT = "/sys/fs/cgroup"


@dataclass(frozen=True, slots=True)
class ShimStep:
    """One shell command of the shim.

    A ``best_effort`` step may fail without aborting the script.
    """

    command: str
    best_effort: bool = False

    def render(self) -> str:
        if self.best_effort:
            return f"{self.command} || :"
        return self.command


# Moving processes out of the root group first, otherwise writing
# subtree_control fails with EBUSY.
CGROUP_V2_STEPS = (
    ShimStep(f"mkdir -p {CGROUP_ROOT}/init"),
    ShimStep(f"xargs -rn1 < {CGROUP_ROOT}/cgroup.procs > {CGROUP_ROOT}/init/cgroup.procs", best_effort=True),
    ShimStep(
        f"sed -e 's/ / +/g' -e 's/^/+/' "
        f"<\"{CGROUP_ROOT}/cgroup.controllers\" >\"{CGROUP_ROOT}/cgroup.subtree_control\"",
        best_effort=True,
    ),
)

_HEADER = """#!/bin/sh

set -o errexit
set -o nounset

# Adapted from https://github.com/moby/moby/blob/ed89041433a031cafc0a0f19cfe573c31688d377/hack/dind#L28-L37
# Permission granted by Akihiro Suda (https://github.com/k3d-io/k3d/issues/493#issuecomment-827405962)
# Moby License Apache 2.0: https://github.com/moby/moby/blob/ed89041433a031cafc0a0f19cfe573c31688d377/LICENSE
"""


def render_entrypoint(steps: tuple[ShimStep, ...] = CGROUP_V2_STEPS) -> str:
    """Render the shim script.

    Steps only run when the unified hierarchy is mounted; without
    ``cgroup.controllers`` the shim goes straight to ``exec``.
    """
    lines = [
        f"if [ -f {CGROUP_ROOT}/cgroup.controllers ]; then",
        '  echo "[$(date -Iseconds)] [CgroupV2 Fix] Evacuating Root Cgroup ..."',
        *(f"  {step.render()}" for step in steps),
        '  echo "[$(date -Iseconds)] [CgroupV2 Fix] Done"',
        "fi",
        "",
        'exec "$@"',
        "",
    ]
    return _HEADER + "\n".join(lines)
