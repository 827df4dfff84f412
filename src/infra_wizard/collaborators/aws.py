"""Cloud API collaborator backed by the AWS CLI.

Calls ``aws ... --output json`` through the process runner and parses the
JSON it prints. Credentials travel in the child process environment only.
"""
from __future__ import annotations

import base64
import binascii
import json
from pathlib import Path
from typing import Any

import structlog

from infra_wizard.collaborators.base import ClusterInfo, RegistryAuth, RegistryRepository
from infra_wizard.core.exceptions import CollaboratorError, ProcessSpawnError
from infra_wizard.process.runner import CancellationToken, ProcessResult, Runner
from infra_wizard.workflows.models import CloudCredentials

logger = structlog.get_logger(__name__)

_REPOSITORY_NOT_FOUND = "RepositoryNotFoundException"


class AwsCliCloudApi:
    """:class:`~infra_wizard.collaborators.base.CloudApi` over the ``aws`` CLI.

    Args:
        runner: Process runner used for every call.
        credentials: Credentials for this workflow.
        binary: Name or path of the AWS CLI.
        cancel: Token that aborts an in-flight call.
    """

    def __init__(
        self,
        runner: Runner,
        credentials: CloudCredentials,
        *,
        binary: str = "aws",
        cancel: CancellationToken | None = None,
    ) -> None:
        self._runner = runner
        self._credentials = credentials
        self._bin = binary
        self._cancel = cancel

    def __repr__(self) -> str:
        return f"AwsCliCloudApi(region={self._credentials.region!r})"

    async def _call(self, *args: str) -> ProcessResult:
        try:
            return await self._runner.run(
                self._bin,
                [*args, "--output", "json"],
                env=self._credentials.as_env(),
                cancel=self._cancel,
            )
        except ProcessSpawnError as exc:
            raise CollaboratorError(f"AWS CLI unavailable: {exc}") from exc

    async def _json(self, *args: str) -> Any:
        result = await self._call(*args)
        if not result.ok:
            raise CollaboratorError(
                f"aws {' '.join(args[:2])} failed: {result.stderr.strip()}",
                details={"exit_code": result.exit_code},
            )
        if not result.stdout.strip():
            return {}
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise CollaboratorError(f"aws {' '.join(args[:2])} returned invalid JSON") from exc

    async def validate_credentials(self) -> dict[str, Any]:
        identity: dict[str, Any] = await self._json("sts", "get-caller-identity")
        logger.info("aws_credentials_validated", account=identity.get("Account"))
        return identity

    async def ensure_registry_repository(self, name: str) -> RegistryRepository:
        """Return the ECR repository *name*, creating it (scan-on-push) if missing."""
        result = await self._call("ecr", "describe-repositories", "--repository-names", name)
        if result.ok:
            repos = json.loads(result.stdout or "{}").get("repositories", [])
            if repos:
                return RegistryRepository(name=name, uri=repos[0]["repositoryUri"])
        elif _REPOSITORY_NOT_FOUND not in result.stderr:
            raise CollaboratorError(
                f"Failed to describe ECR repository {name}: {result.stderr.strip()}"
            )

        created = await self._json(
            "ecr",
            "create-repository",
            "--repository-name",
            name,
            "--image-scanning-configuration",
            "scanOnPush=true",
        )
        uri = created["repository"]["repositoryUri"]
        logger.info("ecr_repository_created", name=name)
        return RegistryRepository(name=name, uri=uri, created=True)

    async def get_registry_auth(self) -> RegistryAuth:
        data = await self._json("ecr", "get-authorization-token")
        try:
            auth = data["authorizationData"][0]
            decoded = base64.b64decode(auth["authorizationToken"]).decode("utf-8")
            username, password = decoded.split(":", 1)
        except (KeyError, IndexError, ValueError, binascii.Error) as exc:
            raise CollaboratorError("Malformed ECR authorization token") from exc
        return RegistryAuth(endpoint=auth["proxyEndpoint"], username=username, password=password)

    async def describe_cluster(self, name: str) -> ClusterInfo:
        data = await self._json("eks", "describe-cluster", "--name", name)
        cluster = data.get("cluster", {})
        return ClusterInfo(
            name=cluster.get("name", name),
            status=cluster.get("status", "UNKNOWN"),
            endpoint=cluster.get("endpoint"),
            version=cluster.get("version"),
        )

    async def write_kubeconfig(self, cluster_name: str, path: Path) -> Path:
        await self._json(
            "eks",
            "update-kubeconfig",
            "--name",
            cluster_name,
            "--region",
            self._credentials.region,
            "--kubeconfig",
            str(path),
        )
        return path
