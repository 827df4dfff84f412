"""External collaborators: cloud API, source host, and the CLIs the pipeline drives."""

from infra_wizard.collaborators.aws import AwsCliCloudApi
from infra_wizard.collaborators.base import (
    CloudApi,
    CloudApiFactory,
    ClusterInfo,
    RegistryAuth,
    RegistryRepository,
    SourceHost,
)
from infra_wizard.collaborators.docker import DockerCli
from infra_wizard.collaborators.github import GitHubSourceHost, default_branch, parse_github_url
from infra_wizard.collaborators.kubectl import KubectlCli
from infra_wizard.collaborators.terraform import TerraformCli

__all__ = [
    "AwsCliCloudApi",
    "CloudApi",
    "CloudApiFactory",
    "ClusterInfo",
    "DockerCli",
    "GitHubSourceHost",
    "KubectlCli",
    "RegistryAuth",
    "RegistryRepository",
    "SourceHost",
    "TerraformCli",
    "default_branch",
    "parse_github_url",
]
