"""Terraform variable generation and HCL rendering."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from infra_wizard.workflows.models import WorkflowContext

_PLACEHOLDER_IMAGE = "nginx:latest"


def generate_terraform_vars(
    context: WorkflowContext, image_uri: str | None = None
) -> dict[str, Any]:
    """Build the ``terraform.tfvars`` values for *context*.

    Entries in ``deployment_config.terraform_config`` override the generated
    value of the same name.
    """
    eks = context.config.eks_config
    project = context.project_name
    env = context.environment.value
    image = image_uri or context.repository.ecr_image_uri or _PLACEHOLDER_IMAGE
    vars_: dict[str, Any] = {
        "project_name": project,
        "environment": env,
        "aws_region": context.credentials.region or "us-west-2",
        # VPC
        "vpc_cidr": "10.0.0.0/16",
        "availability_zones_count": 2,
        "public_subnet_cidrs": ["10.0.1.0/24", "10.0.2.0/24"],
        "private_subnet_cidrs": ["10.0.10.0/24", "10.0.20.0/24"],
        "db_subnet_cidrs": ["10.0.100.0/24", "10.0.200.0/24"],
        "enable_nat_gateway": True,
        "single_nat_gateway": False,
        # EKS
        "kubernetes_version": eks.kubernetes_version,
        "endpoint_private_access": True,
        "endpoint_public_access": True,
        "endpoint_public_access_cidrs": ["0.0.0.0/0"],
        "enable_encryption": True,
        # Node group
        "node_instance_types": [eks.node_instance_type],
        "node_ami_type": "AL2_x86_64",
        "node_capacity_type": "ON_DEMAND",
        "node_disk_size": 20,
        "node_desired_size": eks.desired_capacity,
        "node_max_size": eks.max_capacity,
        "node_min_size": eks.min_capacity,
        # Database
        "enable_database": True,
        "db_engine": "postgres",
        "db_engine_version": "15.4",
        "db_instance_class": "db.t3.micro",
        "db_allocated_storage": 20,
        "db_database_name": "appdb",
        "db_username": "dbadmin",
        "db_port": 5432,
        "db_backup_retention_period": 7,
        "db_multi_az": False,
        "db_storage_encrypted": True,
        # SSL
        "ssl_type": "letsencrypt",
        "domain_name": "",
        "ssl_certificate": "",
        "ssl_private_key": "",
        "enable_https": True,
        # Container images
        "backend_image": image,
        "frontend_image": image,
        "enable_backend_deployment": True,
        "enable_frontend_deployment": True,
        # Storage
        "enable_app_data_bucket": True,
        "enable_backup_bucket": True,
        "enable_versioning": True,
        "enable_kms_encryption": True,
        # Monitoring
        "enable_monitoring": True,
        "alert_emails": [],
        "alb_response_time_threshold": 2.0,
        "node_cpu_threshold": 80,
        "node_memory_threshold": 85,
        "cluster_name": f"{project}-{env}",
        "node_group_name": f"{project}-{env}-nodes",
    }
    vars_.update(context.config.terraform_config)
    return vars_


def backend_config(context: WorkflowContext) -> dict[str, Any]:
    """S3 backend settings written to ``backend.hcl``."""
    project = context.project_name
    env = context.environment.value
    return {
        "bucket": f"{project}-{env}-terraform-state",
        "key": f"{project}/{env}/terraform.tfstate",
        "region": context.credentials.region,
        "encrypt": True,
        "dynamodb_table": f"{project}-{env}-terraform-locks",
    }


def render_value(value: Any) -> str:
    """Render one Python value as an HCL literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return _quote(value)
    if isinstance(value, Mapping):
        items = ", ".join(f"{_quote(str(k))} = {render_value(v)}" for k, v in value.items())
        return "{ " + items + " }" if items else "{}"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(render_value(v) for v in value) + "]"
    raise TypeError(f"Cannot render {type(value).__name__} as HCL")


def _quote(text: str) -> str:
    # Template sequences are literal text in a tfvars file.
    return json.dumps(text).replace("${", "$${").replace("%{", "%%{")


def render_tfvars(values: Mapping[str, Any]) -> str:
    """Render *values* as ``key = literal`` lines."""
    return "".join(f"{key} = {render_value(value)}\n" for key, value in values.items())
