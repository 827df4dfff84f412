"""Interfaces of the external collaborators the pipeline consumes."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from infra_wizard.process.runner import CancellationToken, OutputSink
from infra_wizard.workflows.models import CloudCredentials


class RegistryRepository(BaseModel):
    name: str
    uri: str
    created: bool = False


class RegistryAuth(BaseModel):
    endpoint: str
    username: str
    password: str

    def __repr__(self) -> str:
        return f"RegistryAuth(endpoint={self.endpoint!r}, username={self.username!r})"

    @property
    def registry_host(self) -> str:
        """Endpoint without scheme, as docker expects it."""
        return self.endpoint.removeprefix("https://").removeprefix("http://").rstrip("/")


class ClusterInfo(BaseModel):
    name: str
    status: str
    endpoint: str | None = None
    version: str | None = None


@runtime_checkable
class CloudApi(Protocol):
    """Cloud identity, container registry, and cluster description.

    One instance is bound to one set of credentials.
    """

    async def validate_credentials(self) -> dict[str, Any]: ...

    async def ensure_registry_repository(self, name: str) -> RegistryRepository: ...

    async def get_registry_auth(self) -> RegistryAuth: ...

    async def describe_cluster(self, name: str) -> ClusterInfo: ...

    async def write_kubeconfig(self, cluster_name: str, path: Path) -> Path: ...


CloudApiFactory = Callable[[CloudCredentials, CancellationToken | None], CloudApi]


@runtime_checkable
class SourceHost(Protocol):
    """Source-code hosting: clone and branch listing."""

    async def clone(
        self,
        url: str,
        branch: str | None,
        token: str | None,
        dest: Path,
        *,
        on_output: OutputSink | None = None,
        cancel: CancellationToken | None = None,
    ) -> Path: ...

    async def list_branches(self, url: str, token: str | None = None) -> list[str]: ...
