"""Pre-flight validation of a Terraform command.

Commands fall into three tiers. Mutating commands get the full set of checks,
read-mostly commands need a reachable backend, and the rest only need the
``terraform`` binary. In normal mode the first failing check raises
:class:`ValidationError`; in dry-run mode every check runs and failures are
collected into the returned :class:`ValidationResult`.
"""

from __future__ import annotations

import logging
import re
import shutil
from collections import abc as cabc

from terraflow._config_models import TerraflowConfig
from terraflow._git import is_git_repository
from terraflow._plugin_registry import resolve_auth, resolve_backend, resolve_secrets
from terraflow._terraflow_errors import ConfigError, ValidationError
from terraflow._terraflow_models import ExecutionContext, ValidationResult

logger = logging.getLogger(__name__)

FULL_VALIDATION_COMMANDS = frozenset({"apply", "destroy", "import", "refresh"})
BACKEND_REQUIRED_COMMANDS = frozenset({"plan", "state", "workspace", "output", "show"})
MINIMAL_VALIDATION_COMMANDS = frozenset({"fmt", "validate", "version", "providers"})

WORKSPACE_NAME = re.compile(r"^[a-zA-Z0-9_-]+$")

GIT_REPO_WARNING = "Git repository not detected. Some features may not work correctly."

# Environment variables that prove credentials are available per backend type.
_CREDENTIAL_ENV: dict[str, tuple[str, ...]] = {
    "s3": (
        "AWS_ACCESS_KEY_ID",
        "AWS_PROFILE",
        "AWS_ROLE_ARN",
        "AWS_WEB_IDENTITY_TOKEN_FILE",
        "AWS_CONTAINER_CREDENTIALS_RELATIVE_URI",
        "AWS_CONTAINER_CREDENTIALS_FULL_URI",
    ),
    "azurerm": (
        "ARM_CLIENT_ID",
        "ARM_ACCESS_KEY",
        "ARM_SAS_TOKEN",
        "ARM_USE_MSI",
        "ARM_USE_OIDC",
        "AZURE_CLIENT_ID",
    ),
    "gcs": (
        "GOOGLE_APPLICATION_CREDENTIALS",
        "GOOGLE_CREDENTIALS",
        "GOOGLE_OAUTH_ACCESS_TOKEN",
        "GOOGLE_IMPERSONATE_SERVICE_ACCOUNT",
    ),
}
_CREDENTIAL_SETTINGS: dict[str, tuple[str, ...]] = {
    "s3": ("profile", "role_arn"),
    "azurerm": ("access_key", "sas_token", "client_id", "use_msi"),
    "gcs": ("credentials", "access_token", "impersonate_service_account"),
}
_CLOUD_PROVIDERS = {"s3": "aws", "azurerm": "azure", "gcs": "gcp"}
_AUTH_FIELDS = {
    "s3": "assume_role",
    "azurerm": "service_principal",
    "gcs": "service_account",
}
_PROVIDER_LABELS = {"aws": "AWS", "azure": "Azure", "gcp": "GCP"}


class _Checks:
    """Collect errors and warnings, raising on the first error unless dry-run."""

    def __init__(self, *, dry_run: bool) -> None:
        self.dry_run = dry_run
        self.errors: list[str] = []
        self.warnings: list[str] = []

    def fail(self, message: str) -> None:
        self.errors.append(message)
        if not self.dry_run:
            raise ValidationError(format_errors([message]))

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def result(self) -> ValidationResult:
        return ValidationResult(
            passed=not self.errors,
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
        )


def format_errors(errors: cabc.Iterable[str]) -> str:
    """Render the aggregated validation failure message.

    Examples
    --------
    >>> print(format_errors(["first", "second"]))
    Validation failed:
      - first
      - second
    """
    lines = "\n".join(f"  - {error}" for error in errors)
    return f"Validation failed:\n{lines}"


def command_tier(command: str) -> str:
    """Return ``full``, ``backend``, ``minimal`` or ``none`` for *command*."""
    if command in FULL_VALIDATION_COMMANDS:
        return "full"
    if command in BACKEND_REQUIRED_COMMANDS:
        return "backend"
    if command in MINIMAL_VALIDATION_COMMANDS:
        return "minimal"
    return "none"


def check_terraform_installed() -> str | None:
    if shutil.which("terraform") is None:
        return (
            "Terraform is not installed or not available in PATH. "
            "Please install Terraform and ensure it is in your PATH."
        )
    return None


def check_workspace_name(workspace: str) -> str | None:
    if not WORKSPACE_NAME.match(workspace):
        return (
            f'Invalid workspace name "{workspace}". Workspace names must match '
            "/^[a-zA-Z0-9_-]+$/ (alphanumeric, underscore, hyphen only)."
        )
    return None


def check_git_clean(context: ExecutionContext) -> str | None:
    if not context.vcs.is_clean:
        return (
            "Git working directory has uncommitted changes. Please commit or "
            "stash your changes before running this command. Use "
            "--skip-commit-check to bypass this validation."
        )
    return None


def check_allowed_workspace(workspace: str, config: TerraflowConfig) -> str | None:
    allowed = config.validations.allowed_workspaces if config.validations else None
    if not allowed or workspace in allowed:
        return None
    return (
        f'Workspace "{workspace}" is not in the allowed list. '
        f"Allowed workspaces: {', '.join(allowed)}"
    )


def check_backend_config(config: TerraflowConfig) -> str | None:
    if config.backend is not None and not config.backend.type:
        return "Backend type is required"
    return None


def check_cloud_credentials(
    config: TerraflowConfig,
    context: ExecutionContext,
    env: cabc.Mapping[str, str],
) -> str | None:
    """Return a warning when a remote backend has no visible credentials.

    Any one of these is enough: the matching cloud provider was detected, a
    well-known credential environment variable is set, the matching auth
    method is configured, or the backend carries inline credentials.
    A miss is only a warning: shared profiles and the working directory
    .env file are not inspected.
    """
    backend_type = config.backend.type if config.backend else None
    if not backend_type or backend_type not in _CLOUD_PROVIDERS:
        return None
    provider = _CLOUD_PROVIDERS[backend_type]
    if context.cloud.provider == provider:
        return None
    if any(env.get(key) for key in _CREDENTIAL_ENV[backend_type]):
        return None
    if config.auth is not None and getattr(config.auth, _AUTH_FIELDS[backend_type]):
        return None
    settings = (config.backend.config if config.backend else None) or {}
    if any(settings.get(key) for key in _CREDENTIAL_SETTINGS[backend_type]):
        return None
    label = _PROVIDER_LABELS[provider]
    return (
        f"{backend_type} backend requires {label} credentials, but none were "
        f"found. Configure {label} credentials in the environment or an auth "
        "method in .tfwconfig.yml."
    )


def plugin_config_errors(
    config: TerraflowConfig, env: cabc.Mapping[str, str]
) -> list[str]:
    """Resolve the configured plugins and run their ``validate`` methods."""
    errors: list[str] = []
    if config.auth is not None and config.auth.plugin_name:
        try:
            resolve_auth(config.auth.plugin_name).validate(config.auth, env)
        except ConfigError as exc:
            errors.append(str(exc))
    if config.secrets is not None and config.secrets.provider:
        try:
            resolve_secrets(config.secrets.provider).validate(config.secrets, env)
        except ConfigError as exc:
            errors.append(str(exc))
    if config.backend is not None and config.backend.type:
        try:
            resolve_backend(config.backend.type).validate(config.backend, env)
        except ConfigError as exc:
            errors.append(str(exc))
    return errors


def _is_remote(config: TerraflowConfig) -> bool:
    return config.backend is not None and config.backend.type != "local"


def validate(
    command: str,
    config: TerraflowConfig,
    context: ExecutionContext,
    *,
    skip_commit_check: bool = False,
    dry_run: bool = False,
    env: cabc.Mapping[str, str] | None = None,
) -> ValidationResult:
    """Run the checks for *command*'s tier.

    Parameters
    ----------
    command
        Terraform subcommand, such as ``plan`` or ``apply``.
    config
        Resolved configuration.
    context
        Execution context for this run.
    skip_commit_check
        Skip the clean working tree check; ``config.skip_commit_check`` has
        the same effect.
    dry_run
        Collect failures instead of raising.
    env
        Environment to inspect for credentials; defaults to ``context.env``.

    Returns
    -------
    ValidationResult
        ``passed`` is ``False`` only in dry-run mode.

    Raises
    ------
    ValidationError
        On the first failing check when not in dry-run mode.
    """
    environ = context.env if env is None else env
    checks = _Checks(dry_run=dry_run)
    tier = command_tier(command)
    logger.debug("Validating %r with %s tier checks", command, tier)

    if error := check_terraform_installed():
        checks.fail(error)
    if tier in {"full", "backend"}:
        if error := check_workspace_name(context.workspace):
            checks.fail(error)
    if not is_git_repository(context.working_dir):
        checks.warn(GIT_REPO_WARNING)

    if tier == "full":
        require_commit = not (
            config.validations and config.validations.require_git_commit is False
        )
        if require_commit and not (skip_commit_check or config.skip_commit_check):
            if error := check_git_clean(context):
                checks.fail(error)
        if error := check_allowed_workspace(context.workspace, config):
            checks.fail(error)
        if error := check_backend_config(config):
            checks.fail(error)
        if _is_remote(config) and (
            error := check_cloud_credentials(config, context, environ)
        ):
            checks.warn(error)
        for error in plugin_config_errors(config, environ):
            checks.fail(error)
    elif tier == "backend" and _is_remote(config):
        if error := check_backend_config(config):
            checks.fail(error)
        if error := check_cloud_credentials(config, context, environ):
            checks.warn(error)

    result = checks.result()
    if not result.passed:
        for error in result.errors:
            logger.error(error)
    return result
