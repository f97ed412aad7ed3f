"""Backend capability plugins.

Each plugin validates a :class:`BackendConfig`, turns it into
``-backend-config=`` arguments for ``terraform init`` and may verify the
remote store in an optional ``setup`` hook. Empty-string values count as
absent, so optional fields with defaults fall back to the default.
"""

from __future__ import annotations

import logging
from collections import abc as cabc
from typing import Any, cast

from terraflow._cloud import CommandContext, run_command
from terraflow._config_models import BackendConfig
from terraflow._environment import format_tf_var
from terraflow._templates import resolve_object
from terraflow._terraflow_errors import CloudCommandError, ConfigError
from terraflow._terraflow_models import ExecutionContext

logger = logging.getLogger(__name__)


def _present(value: object) -> bool:
    return value is not None and value != ""


def backend_arg(key: str, value: object) -> str:
    """Return one ``-backend-config`` argument.

    Examples
    --------
    >>> backend_arg("encrypt", True)
    '-backend-config=encrypt=true'
    """
    return f"-backend-config={key}={format_tf_var(value)}"


def _require_config(descriptor: BackendConfig, label: str) -> dict[str, Any]:
    if not descriptor.config:
        msg = f"{label} backend requires configuration"
        raise ConfigError(msg)
    return descriptor.config


def _require_fields(
    settings: cabc.Mapping[str, Any], label: str, names: cabc.Iterable[str]
) -> None:
    for name in names:
        if not _present(settings.get(name)):
            msg = f'{label} backend requires "{name}" configuration'
            raise ConfigError(msg)


def _resolve_settings(
    settings: cabc.Mapping[str, Any],
    context: ExecutionContext,
    extra: cabc.Mapping[str, str | None],
) -> dict[str, Any]:
    variables = dict(context.template_vars)
    variables.update({key: value for key, value in extra.items() if value})
    return cast(dict[str, Any], resolve_object(dict(settings), variables))


def _optional_args(
    settings: cabc.Mapping[str, Any], names: cabc.Iterable[str]
) -> list[str]:
    return [
        backend_arg(name, settings[name])
        for name in names
        if _present(settings.get(name))
    ]


class LocalBackend:
    """State on local disk; needs no configuration or init arguments."""

    name = "local"

    def validate(
        self, descriptor: BackendConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None:
        return None

    def init_args(
        self, descriptor: BackendConfig, context: ExecutionContext
    ) -> list[str]:
        return []


class S3Backend:
    """AWS S3 state storage with DynamoDB locking."""

    name = "s3"
    label = "S3"
    required = ("bucket", "key")
    optional = (
        "kms_key_id",
        "profile",
        "role_arn",
        "session_name",
        "endpoint",
        "workspace_key_prefix",
    )
    default_lock_table = "terraform-statelock"

    def validate(
        self, descriptor: BackendConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None:
        settings = _require_config(descriptor, self.label)
        _require_fields(settings, self.label, self.required)
        if settings.get("encrypt") is False:
            logger.warning(
                "S3 backend encryption is disabled. State files may contain "
                "sensitive data; consider setting encrypt: true"
            )

    def init_args(
        self, descriptor: BackendConfig, context: ExecutionContext
    ) -> list[str]:
        """Build ``terraform init`` arguments for S3.

        Examples
        --------
        >>> from pathlib import Path
        >>> from terraflow._terraflow_models import CloudInfo, VcsInfo
        >>> ctx = ExecutionContext("main", Path("/w"), CloudInfo(), VcsInfo(), "h")
        >>> args = S3Backend().init_args(
        ...     BackendConfig("s3", {"bucket": "b", "key": "k"}), ctx
        ... )
        >>> args[-1]
        '-backend-config=dynamodb_table=terraform-statelock'
        """
        settings = _resolve_settings(
            _require_config(descriptor, self.label),
            context,
            {
                "AWS_REGION": context.cloud.aws_region,
                "AWS_ACCOUNT_ID": context.cloud.aws_account_id,
            },
        )
        args = [
            backend_arg("bucket", settings.get("bucket")),
            backend_arg("key", settings.get("key")),
        ]
        region = settings.get("region") or context.cloud.aws_region
        if _present(region):
            args.append(backend_arg("region", region))
        encrypt = settings.get("encrypt")
        args.append(backend_arg("encrypt", True if encrypt is None else encrypt))
        lock_table = settings.get("dynamodb_table")
        args.append(
            backend_arg(
                "dynamodb_table",
                lock_table if _present(lock_table) else self.default_lock_table,
            )
        )
        args.extend(_optional_args(settings, self.optional))
        logger.debug("Generated %d backend-config arguments for S3", len(args))
        return args

    def setup(
        self,
        descriptor: BackendConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str] | None = None,
    ) -> None:
        """Check that the state bucket is reachable; failures only warn."""
        settings = _resolve_settings(descriptor.config or {}, context, {})
        bucket = settings.get("bucket")
        if not _present(bucket):
            return
        try:
            run_command(
                "aws",
                "s3api",
                "head-bucket",
                "--bucket",
                str(bucket),
                context=CommandContext(env=env),
            )
        except CloudCommandError as exc:
            logger.warning("Could not verify S3 bucket %s: %s", bucket, exc)


class AzurermBackend:
    """Azure Storage state storage."""

    name = "azurerm"
    label = "Azure RM"
    required = ("storage_account_name", "container_name", "key")
    optional = (
        "resource_group_name",
        "subscription_id",
        "tenant_id",
        "client_id",
        "client_secret",
        "client_certificate_path",
        "client_certificate_password",
        "use_msi",
        "msi_endpoint",
        "environment",
        "endpoint",
        "sas_token",
        "access_key",
        "snapshot",
        "encryption",
    )

    def validate(
        self, descriptor: BackendConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None:
        settings = _require_config(descriptor, self.label)
        _require_fields(settings, self.label, self.required)

    def init_args(
        self, descriptor: BackendConfig, context: ExecutionContext
    ) -> list[str]:
        settings = _resolve_settings(
            _require_config(descriptor, self.label),
            context,
            {
                "AZURE_SUBSCRIPTION_ID": context.cloud.azure_subscription_id,
                "AZURE_TENANT_ID": context.cloud.azure_tenant_id,
            },
        )
        args = [backend_arg(name, settings.get(name)) for name in self.required]
        args.extend(_optional_args(settings, self.optional))
        logger.debug("Generated %d backend-config arguments for Azure RM", len(args))
        return args


class GcsBackend:
    """Google Cloud Storage state storage."""

    name = "gcs"
    label = "GCS"
    optional = (
        "credentials",
        "impersonate_service_account",
        "access_token",
        "encryption_key",
    )
    default_prefix = "terraform/state"

    def validate(
        self, descriptor: BackendConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None:
        settings = _require_config(descriptor, self.label)
        _require_fields(settings, self.label, ("bucket",))

    def init_args(
        self, descriptor: BackendConfig, context: ExecutionContext
    ) -> list[str]:
        settings = _resolve_settings(
            _require_config(descriptor, self.label),
            context,
            {"GCP_PROJECT_ID": context.cloud.gcp_project_id},
        )
        prefix = settings.get("prefix")
        args = [
            backend_arg("bucket", settings.get("bucket")),
            backend_arg("prefix", prefix if _present(prefix) else self.default_prefix),
        ]
        args.extend(_optional_args(settings, self.optional))
        logger.debug("Generated %d backend-config arguments for GCS", len(args))
        return args
