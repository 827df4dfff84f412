"""kubectl wrapper bound to one workflow's kubeconfig."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from infra_wizard.process.runner import ProcessResult, Runner

RUNNING_PHASES = frozenset({"Running", "Succeeded"})


class KubectlCli:
    def __init__(self, runner: Runner, kubeconfig: Path, binary: str = "kubectl") -> None:
        self._runner = runner
        self._bin = binary
        self._kubeconfig = kubeconfig

    def __repr__(self) -> str:
        return f"KubectlCli(kubeconfig={str(self._kubeconfig)!r})"

    async def _run(self, args: list[str], **kwargs: Any) -> ProcessResult:
        return await self._runner.run(
            self._bin,
            [*args, "--kubeconfig", str(self._kubeconfig)],
            **kwargs,
        )

    async def wait_for_deployments(self, namespace: str, timeout_seconds: int, **kwargs: Any) -> ProcessResult:
        """Block until every deployment in *namespace* reports ``Available``."""
        result = await self._run(
            [
                "wait",
                "--for=condition=available",
                "deployment",
                "--all",
                "-n",
                namespace,
                f"--timeout={timeout_seconds}s",
            ],
            **kwargs,
        )
        return result.check("kubectl wait")

    async def get_pods(self, namespace: str, **kwargs: Any) -> list[dict[str, Any]]:
        result = await self._run(["get", "pods", "-n", namespace, "-o", "json"], **kwargs)
        result.check("kubectl get pods")
        items: list[dict[str, Any]] = json.loads(result.stdout or "{}").get("items", [])
        return items


def pod_phase(pod: dict[str, Any]) -> str:
    return str(pod.get("status", {}).get("phase", "Unknown"))


def pod_name(pod: dict[str, Any]) -> str:
    return str(pod.get("metadata", {}).get("name", "<unnamed>"))
