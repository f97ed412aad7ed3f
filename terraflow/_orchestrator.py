"""Sequence the stages of one terraflow run.

``VALIDATE -> SETUP_ENVIRONMENT -> DETECT_MIGRATION -> AUTHENTICATE ->
FETCH_SECRETS -> CONFIGURE_BACKEND`` always run in that order. A dry run stops
there and returns an :class:`ExecutionPlan`; otherwise Terraform is driven
through ``init``, workspace selection and the requested command.
"""

from __future__ import annotations

import logging
from collections import abc as cabc
from dataclasses import dataclass, replace

from terraflow._backend_state import detect_migration, save_backend_state
from terraflow._config_models import BackendConfig, TerraflowConfig
from terraflow._context import build_template_vars
from terraflow._environment import EnvironmentOverlay, setup_environment
from terraflow._plugin_registry import resolve_auth, resolve_backend, resolve_secrets
from terraflow._provisioner import (
    TERRAFORM_BINARY,
    run_command_passthrough,
    select_or_create_workspace,
    terraform_init,
)
from terraflow._terraflow_models import (
    CloudInfo,
    ExecutionContext,
    ExecutionPlan,
    ValidationResult,
)
from terraflow._validation import validate

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = BackendConfig(type="local")


@dataclass(frozen=True, slots=True)
class BackendSetup:
    """Outcome of the CONFIGURE_BACKEND stage."""

    backend_type: str
    init_args: tuple[str, ...]


def _with_cloud(
    context: ExecutionContext, cloud: CloudInfo, overlay: EnvironmentOverlay
) -> ExecutionContext:
    """Return *context* updated for a cloud identity found after ``.env`` loading."""
    environ = overlay.as_environ()
    return replace(
        context,
        cloud=cloud,
        env=environ,
        template_vars=build_template_vars(
            context.workspace, context.hostname, cloud, context.vcs, environ
        ),
    )


def authenticate(
    config: TerraflowConfig, context: ExecutionContext, overlay: EnvironmentOverlay
) -> dict[str, str]:
    """Run the configured auth plugin and apply its credentials to *overlay*."""
    auth = config.auth
    if auth is None or auth.plugin_name is None:
        return {}
    plugin = resolve_auth(auth.plugin_name)
    print(f"\n--- Authenticating with {plugin.name} ---")
    plugin.validate(auth, overlay.as_environ())
    credentials = plugin.authenticate(auth, context, overlay.as_environ())
    overlay.overrides(credentials)
    logger.info("Authentication successful")
    return credentials


def fetch_secrets(
    config: TerraflowConfig, context: ExecutionContext, overlay: EnvironmentOverlay
) -> dict[str, str]:
    """Run the configured secrets plugin and apply its variables to *overlay*."""
    secrets = config.secrets
    if secrets is None or not secrets.provider:
        return {}
    plugin = resolve_secrets(secrets.provider)
    print(f"\n--- Fetching secrets from {plugin.name} ---")
    plugin.validate(secrets, overlay.as_environ())
    variables = plugin.fetch(secrets, context, overlay.as_environ())
    overlay.overrides(variables)
    print(f"Loaded {len(variables)} Terraform variables from secrets")
    return variables


def configure_backend(
    config: TerraflowConfig,
    context: ExecutionContext,
    overlay: EnvironmentOverlay,
    *,
    dry_run: bool = False,
) -> BackendSetup:
    """Validate the backend, run its setup hook and collect init arguments.

    The setup hook is skipped in dry-run mode, and the backend is only
    persisted for migration detection on a real run.
    """
    descriptor = config.backend or DEFAULT_BACKEND
    backend_type = descriptor.type or "local"
    if descriptor.type is None:
        descriptor = replace(descriptor, type=backend_type)
    plugin = resolve_backend(backend_type)
    print(f"\n--- Configuring {backend_type} backend ---")
    plugin.validate(descriptor, overlay.as_environ())

    setup = getattr(plugin, "setup", None)
    if setup is not None and not dry_run:
        setup(descriptor, context, overlay.as_environ())

    init_args = tuple(plugin.init_args(descriptor, context))
    if not dry_run and config.backend is not None:
        save_backend_state(context.working_dir, descriptor)
    return BackendSetup(backend_type=backend_type, init_args=init_args)


def execute(
    command: str,
    args: cabc.Sequence[str],
    config: TerraflowConfig,
    context: ExecutionContext,
    *,
    dry_run: bool = False,
    skip_commit_check: bool = False,
    overlay: EnvironmentOverlay | None = None,
) -> ExecutionPlan | None:
    """Run *command* with every terraflow stage.

    Parameters
    ----------
    command
        Terraform subcommand to run.
    args
        Arguments passed through to the subcommand.
    config
        Resolved configuration.
    context
        Execution context for this run.
    dry_run
        Stop after backend configuration and return the plan.
    skip_commit_check
        Skip the clean working tree validation.
    overlay
        Environment overlay to thread through the stages; built from
        ``context.env`` when omitted.

    Returns
    -------
    ExecutionPlan | None
        The plan in dry-run mode, otherwise ``None``.

    Raises
    ------
    ValidationError
        When validation fails outside dry-run mode.
    ConfigError
        When a plugin cannot be resolved or rejects its configuration.
    ProvisionerCommandError
        When a Terraform invocation exits with a non-zero status.
    """
    overlay = overlay if overlay is not None else EnvironmentOverlay(context.env)

    print(f"Running terraform {command} in workspace '{context.workspace}'...")
    print(f"  Working dir: {context.working_dir}")
    print(f"  Dry run: {dry_run}")

    print("\n--- Running validations ---")
    validation: ValidationResult = validate(
        command,
        config,
        context,
        skip_commit_check=skip_commit_check or bool(config.skip_commit_check),
        dry_run=dry_run,
        env=overlay.as_environ(),
    )
    if validation.passed:
        print("All validations passed")

    print("\n--- Setting up environment ---")
    setup = setup_environment(config, context, overlay)
    resolved = setup.config
    if setup.cloud != context.cloud:
        context = _with_cloud(context, setup.cloud, overlay)

    if resolved.backend is not None:
        previous = detect_migration(context.working_dir, resolved.backend)
        if previous is not None:
            logger.warning(
                "Backend changed from '%s' to '%s'. Terraform will prompt to "
                "migrate state.",
                previous,
                resolved.backend.type,
            )

    authenticate(resolved, context, overlay)
    fetch_secrets(resolved, context, overlay)
    backend = configure_backend(resolved, context, overlay, dry_run=dry_run)

    if dry_run:
        print("\nDry run mode - Terraform commands will not be executed")
        return ExecutionPlan(
            workspace=context.workspace,
            working_dir=context.working_dir,
            backend_type=backend.backend_type,
            init_args=backend.init_args,
            command_line=(TERRAFORM_BINARY, command, *args),
            validation=validation,
        )

    environ = overlay.as_environ()
    print("\n--- Running terraform init ---")
    terraform_init(
        context.working_dir, backend.backend_type, backend.init_args, environ
    )

    print(f"\n--- Selecting workspace {context.workspace} ---")
    select_or_create_workspace(context.working_dir, context.workspace, environ)

    print(f"\n--- Running terraform {command} ---")
    run_command_passthrough(context.working_dir, command, args, environ)
    return None
