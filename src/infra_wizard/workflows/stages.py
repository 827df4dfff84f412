"""Stage executors and the default deployment pipeline.

Each executor receives the :class:`~infra_wizard.workflows.pipeline.StageRun`
for the current workflow and returns a
:class:`~infra_wizard.workflows.models.StageOutcome`. Raising an
:class:`~infra_wizard.core.exceptions.InfraWizardError` is equivalent to
returning a failed outcome with the error's message.
"""
from __future__ import annotations

from pathlib import Path

from infra_wizard.collaborators.kubectl import RUNNING_PHASES, pod_name, pod_phase
from infra_wizard.collaborators.tfvars import backend_config, generate_terraform_vars, render_tfvars
from infra_wizard.core.constants import LogLevel, StageId, WorkflowMode
from infra_wizard.core.exceptions import ProcessExecutionError, ProcessSpawnError
from infra_wizard.workflows.models import StageOutcome
from infra_wizard.workflows.pipeline import Pipeline, StageDefinition, StageRun, describe_failure


# ---------------------------------------------------------------------------
# Skip rules
# ---------------------------------------------------------------------------


def skip_image_build(run: StageRun) -> str | None:
    """Build-side stages are unnecessary for destroy runs and prebuilt images."""
    if run.mode is WorkflowMode.DESTROY:
        return "Not needed for destroy"
    if run.context.repository.has_prebuilt_image:
        return "Skipped: using pre-built image"
    return None


# ---------------------------------------------------------------------------
# Source and image
# ---------------------------------------------------------------------------


async def clone_repository(run: StageRun) -> StageOutcome:
    repo = run.context.repository
    if not repo.url:
        return StageOutcome.fail("Repository URL is required to clone")
    token = repo.access_token.get_secret_value() if repo.access_token else None
    await run.log(f"Cloning repository: {repo.url}")
    if repo.branch:
        await run.log(f"Using branch: {repo.branch}")
    if token:
        await run.log("Using access token for authentication")

    path = await run.toolchain.source_host.clone(
        repo.url,
        repo.branch,
        token,
        run.source_dir,
        on_output=run.sink("git"),
        cancel=run.token,
    )
    await run.log(f"Repository cloned to: {path}", LogLevel.SUCCESS)
    return StageOutcome.ok("Repository cloned successfully", repository_path=str(path))


async def build_image(run: StageRun) -> StageOutcome:
    repo_path = run.artifacts.get("repository_path")
    if not repo_path:
        return StageOutcome.fail("Repository path not available; clone stage did not run")
    context_dir = Path(repo_path)
    if not (context_dir / "Dockerfile").is_file():
        return StageOutcome.fail("Dockerfile not found in repository root")
    await run.log("Dockerfile found in repository")

    image = f"{run.context.project_name}:{run.context.repository.image_tag}"
    await run.log(f"Building Docker image: {image}")
    docker = run.toolchain.docker(run.docker_config_dir)
    await docker.build(context_dir, image, **run.process_kwargs())
    await run.log(f"Docker image built: {image}", LogLevel.SUCCESS)
    return StageOutcome.ok("Docker image built successfully", local_image=image)


async def setup_registry(run: StageRun) -> StageOutcome:
    name = run.context.image_repository_name
    await run.log(f"Ensuring ECR repository: {name}")
    repository = await run.cloud_api().ensure_registry_repository(name)
    if repository.created:
        await run.log(f"Created ECR repository: {repository.uri}", LogLevel.SUCCESS)
    else:
        await run.log(f"ECR repository already exists: {repository.uri}")
    return StageOutcome.ok("ECR repository ready", registry_repository_uri=repository.uri)


async def push_image(run: StageRun) -> StageOutcome:
    local_image = run.artifacts.get("local_image")
    if not local_image:
        return StageOutcome.fail("No built image available to push")

    auth = await run.cloud_api().get_registry_auth()
    registry = auth.registry_host
    target = f"{registry}/{run.context.image_repository_name}:{run.context.repository.image_tag}"
    docker = run.toolchain.docker(run.docker_config_dir)

    await run.log(f"Logging in to registry {registry}")
    await docker.login(registry, auth.username, auth.password, cancel=run.token)
    await docker.tag(local_image, target, cancel=run.token)
    await run.log(f"Pushing image: {target}")
    await docker.push(target, **run.process_kwargs())
    await run.log(f"Image pushed: {target}", LogLevel.SUCCESS)
    return StageOutcome.ok("Image pushed to ECR successfully", image_uri=target, registry=registry)


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


async def terraform_init(run: StageRun) -> StageOutcome:
    terraform = run.toolchain.terraform
    values = generate_terraform_vars(run.context, image_uri=run.artifacts.get("image_uri"))
    await terraform.prepare_workspace(
        run.config.terraform_template_path,
        run.terraform_dir,
        render_tfvars(values),
        render_tfvars(backend_config(run.context)),
    )
    await run.log("Copied Terraform templates and generated variables")
    await terraform.init(run.terraform_dir, run.env(), **run.process_kwargs())
    return StageOutcome.ok("Terraform initialized", terraform_dir=str(run.terraform_dir))


async def terraform_plan(run: StageRun) -> StageOutcome:
    destroy = run.mode is WorkflowMode.DESTROY
    await run.toolchain.terraform.plan(
        run.terraform_dir, run.env(), destroy=destroy, **run.process_kwargs()
    )
    return StageOutcome.ok("Destroy plan created" if destroy else "Infrastructure plan created")


async def import_existing_resources(run: StageRun) -> int:
    """Adopt resources that commonly survive a previous failed run.

    Every failure here is a warning: the resource may simply not exist yet.
    Returns the number of resources imported.
    """
    terraform = run.toolchain.terraform
    values = {
        "project_name": run.context.project_name,
        "environment": run.context.environment.value,
    }
    imported = 0
    for entry in run.config.conflict_imports:
        address, resource_id = entry.render(**values)
        try:
            result = await terraform.import_resource(
                run.terraform_dir, run.env(), address, resource_id, cancel=run.token
            )
        except ProcessSpawnError as exc:
            await run.log(f"Import skipped for {address}: {exc.message}", LogLevel.WARNING)
            continue
        if result.ok:
            imported += 1
            await run.log(f"Imported existing resource {address}")
        else:
            reason = result.stderr.strip().splitlines()[-1] if result.stderr.strip() else "not found"
            await run.log(f"Import skipped for {address}: {reason}", LogLevel.WARNING)
    return imported


async def terraform_apply(run: StageRun) -> StageOutcome:
    terraform = run.toolchain.terraform
    if run.mode is WorkflowMode.DESTROY:
        await run.log("Destroying infrastructure; this may take 10-15 minutes")
        await terraform.destroy(run.terraform_dir, run.env(), **run.process_kwargs())
        return StageOutcome.ok("Infrastructure destroyed successfully")

    if await import_existing_resources(run):
        # The saved plan predates the imported state.
        await run.log("Refreshing the plan after importing existing resources")
        await terraform.plan(run.terraform_dir, run.env(), **run.process_kwargs())
    await run.log("Applying infrastructure plan; this may take 10-15 minutes")
    policy = run.toolchain.conflict_policy
    result = await terraform.apply(
        run.terraform_dir, run.env(), **run.process_kwargs(conflict_policy=policy)
    )
    if not policy.accepts(result):
        return StageOutcome.fail(describe_failure("Terraform apply", result))
    if policy.is_tolerated(result):
        await run.log("Some resources already existed; continuing", LogLevel.WARNING)

    outputs: dict[str, object] = {}
    try:
        outputs = await terraform.output(run.terraform_dir, run.env(), cancel=run.token)
    except (ProcessExecutionError, ValueError) as exc:
        await run.log(
            f"Could not read Terraform outputs, deployment may still have succeeded: {exc}",
            LogLevel.WARNING,
        )
    return StageOutcome.ok("Infrastructure deployed successfully", terraform_outputs=outputs)


# ---------------------------------------------------------------------------
# Cluster and application
# ---------------------------------------------------------------------------


async def configure_kubectl(run: StageRun) -> StageOutcome:
    outputs = run.artifacts.get("terraform_outputs") or {}
    cluster = str(outputs.get("cluster_name") or run.context.cluster_name)
    cloud = run.cloud_api()
    info = await cloud.describe_cluster(cluster)
    if info.status != "ACTIVE":
        return StageOutcome.fail(f"Cluster {cluster} is not active (status: {info.status})")
    await cloud.write_kubeconfig(cluster, run.kubeconfig)
    await run.log(f"kubeconfig written for cluster {cluster}")
    return StageOutcome.ok("kubectl configured", cluster_name=cluster, kubeconfig=str(run.kubeconfig))


async def deploy_application(run: StageRun) -> StageOutcome:
    kubectl = run.toolchain.kubectl(run.kubeconfig)
    await run.log(f"Waiting for deployments in namespace {run.namespace}")
    await kubectl.wait_for_deployments(
        run.namespace, run.config.rollout_timeout_seconds, **run.process_kwargs()
    )
    return StageOutcome.ok("Application deployed successfully")


async def verify_deployment(run: StageRun) -> StageOutcome:
    kubectl = run.toolchain.kubectl(run.kubeconfig)
    pods = await kubectl.get_pods(run.namespace, cancel=run.token)
    if not pods:
        return StageOutcome.fail(f"No pods found in namespace {run.namespace}")
    not_running = [f"{pod_name(p)} ({pod_phase(p)})" for p in pods if pod_phase(p) not in RUNNING_PHASES]
    if not_running:
        return StageOutcome.fail(f"Pods not running: {', '.join(not_running)}")
    await run.log(f"{len(pods)} pod(s) running", LogLevel.SUCCESS)

    outputs = run.artifacts.get("terraform_outputs") or {}
    url = outputs.get("application_url") or (
        f"https://{run.context.project_name}-{run.context.environment.value}.example.com"
    )
    await run.log(f"Application available at {url}", LogLevel.SUCCESS)
    return StageOutcome.ok("Deployment verified successfully", deployment_url=url)


# ---------------------------------------------------------------------------
# Default table
# ---------------------------------------------------------------------------


def default_pipeline() -> Pipeline:
    """The deployment pipeline: image, infrastructure, then application."""
    return Pipeline(
        [
            StageDefinition(
                StageId.CLONE, "Clone Repository", clone_repository,
                running_message="Cloning repository...", skip_when=skip_image_build,
            ),
            StageDefinition(
                StageId.BUILD, "Build Docker Image", build_image,
                running_message="Building Docker image...", skip_when=skip_image_build,
            ),
            StageDefinition(
                StageId.ECR_SETUP, "Setup ECR Repository", setup_registry,
                running_message="Setting up ECR repository...", skip_when=skip_image_build,
            ),
            StageDefinition(
                StageId.PUSH, "Push to ECR", push_image,
                running_message="Pushing image to ECR...", skip_when=skip_image_build,
            ),
            StageDefinition(
                StageId.TERRAFORM_INIT, "Initialize Terraform", terraform_init,
                running_message="Initializing Terraform...",
            ),
            StageDefinition(
                StageId.TERRAFORM_PLAN, "Plan Infrastructure", terraform_plan,
                running_message="Planning infrastructure changes...",
            ),
            StageDefinition(
                StageId.TERRAFORM_APPLY, "Deploy Infrastructure", terraform_apply,
                running_message="Applying infrastructure changes...",
            ),
            StageDefinition(
                StageId.KUBECTL_CONFIG, "Configure kubectl", configure_kubectl,
                running_message="Configuring kubectl...", destroy_excluded=True,
            ),
            StageDefinition(
                StageId.DEPLOY_APP, "Deploy Application", deploy_application,
                running_message="Deploying application...", destroy_excluded=True,
            ),
            StageDefinition(
                StageId.VERIFY, "Verify Deployment", verify_deployment,
                running_message="Verifying deployment...", destroy_excluded=True,
            ),
        ]
    )
