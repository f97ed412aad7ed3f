"""Cloud CLI helpers and best-effort cloud identity detection."""

from __future__ import annotations

import logging
import os
from collections import abc as cabc
from dataclasses import dataclass

from plumbum import CommandNotFound, local
from plumbum.commands.processes import ProcessExecutionError

from terraflow._terraflow_errors import CloudCommandError
from terraflow._terraflow_models import CloudInfo

logger = logging.getLogger(__name__)

AWS_HINT_KEYS = (
    "AWS_ACCESS_KEY_ID",
    "AWS_PROFILE",
    "AWS_ROLE_ARN",
    "AWS_WEB_IDENTITY_TOKEN_FILE",
    "AWS_REGION",
    "AWS_DEFAULT_REGION",
)
AZURE_HINT_KEYS = (
    "ARM_SUBSCRIPTION_ID",
    "ARM_CLIENT_ID",
    "ARM_USE_MSI",
    "AZURE_SUBSCRIPTION_ID",
    "AZURE_CLIENT_ID",
)
GCP_HINT_KEYS = (
    "GOOGLE_APPLICATION_CREDENTIALS",
    "GOOGLE_CREDENTIALS",
    "GOOGLE_CLOUD_PROJECT",
    "GCLOUD_PROJECT",
    "GCP_PROJECT",
    "CLOUDSDK_CORE_PROJECT",
)


@dataclass(slots=True)
class CommandContext:
    """Execution options for :func:`run_command`."""

    env: cabc.Mapping[str, str] | None = None
    stdin: str | None = None
    timeout: int | None = None


def run_command(
    command: str,
    *args: str,
    context: CommandContext | None = None,
) -> str:
    """Execute a cloud CLI command and return its standard output.

    Raises
    ------
    CloudCommandError
        When the binary is missing or exits non-zero.

    Examples
    --------
    >>> run_command("printf", "hello")
    'hello'
    """
    ctx = context or CommandContext()
    env = dict(ctx.env) if ctx.env is not None else None
    try:
        bound = local[command][list(args)]
        if ctx.stdin is None:
            _, stdout, _ = bound.run(env=env, timeout=ctx.timeout)
        else:
            _, stdout, _ = (bound << ctx.stdin).run(env=env, timeout=ctx.timeout)
    except CommandNotFound as exc:
        msg = f"Command {command!r} is not installed or not on PATH"
        raise CloudCommandError(msg) from exc
    except ProcessExecutionError as exc:
        msg = f"Command {command!r} failed: {exc.stderr.strip()}"
        raise CloudCommandError(msg) from exc
    return stdout


def _first(env: cabc.Mapping[str, str], *keys: str) -> str | None:
    for key in keys:
        if value := env.get(key):
            return value
    return None


def _probe(command: str, *args: str, env: cabc.Mapping[str, str]) -> str | None:
    try:
        output = run_command(command, *args, context=CommandContext(env=env))
    except CloudCommandError as exc:
        logger.debug("Cloud probe %s failed: %s", command, exc)
        return None
    return output.strip() or None


def get_aws_region(env: cabc.Mapping[str, str]) -> str | None:
    return _first(env, "AWS_REGION", "AWS_DEFAULT_REGION")


def get_aws_account_id(env: cabc.Mapping[str, str]) -> str | None:
    return _probe(
        "aws",
        "sts",
        "get-caller-identity",
        "--query",
        "Account",
        "--output",
        "text",
        env=env,
    )


def get_azure_subscription_id(env: cabc.Mapping[str, str]) -> str | None:
    return _first(env, "ARM_SUBSCRIPTION_ID", "AZURE_SUBSCRIPTION_ID") or _probe(
        "az", "account", "show", "--query", "id", "--output", "tsv", env=env
    )


def get_azure_tenant_id(env: cabc.Mapping[str, str]) -> str | None:
    return _first(env, "ARM_TENANT_ID", "AZURE_TENANT_ID") or _probe(
        "az", "account", "show", "--query", "tenantId", "--output", "tsv", env=env
    )


def get_gcp_project_id(env: cabc.Mapping[str, str]) -> str | None:
    project = _first(
        env,
        "GOOGLE_CLOUD_PROJECT",
        "GCLOUD_PROJECT",
        "GCP_PROJECT",
        "CLOUDSDK_CORE_PROJECT",
    )
    return project or _probe("gcloud", "config", "get-value", "project", env=env)


def detect_cloud(env: cabc.Mapping[str, str] | None = None) -> CloudInfo:
    """Detect the active cloud provider from environment hints.

    Only the provider whose hint variables are present is probed, and each
    identifier lookup degrades to ``None`` on failure.

    Examples
    --------
    >>> detect_cloud({}).provider
    'none'
    """
    environ = os.environ if env is None else env
    if any(environ.get(key) for key in AWS_HINT_KEYS):
        return CloudInfo(
            provider="aws",
            aws_account_id=get_aws_account_id(environ),
            aws_region=get_aws_region(environ),
        )
    if any(environ.get(key) for key in AZURE_HINT_KEYS):
        return CloudInfo(
            provider="azure",
            azure_subscription_id=get_azure_subscription_id(environ),
            azure_tenant_id=get_azure_tenant_id(environ),
        )
    if any(environ.get(key) for key in GCP_HINT_KEYS):
        return CloudInfo(provider="gcp", gcp_project_id=get_gcp_project_id(environ))
    return CloudInfo()
