"""Authentication capability plugins.

Each plugin validates its sub-object of :class:`AuthConfig` and returns the
raw credential environment variables the provisioner and later stages need.
"""

from __future__ import annotations

import json
import logging
import re
from collections import abc as cabc
from pathlib import Path
from typing import Any

from terraflow._cloud import CommandContext, run_command
from terraflow._config_models import (
    AssumeRoleConfig,
    AuthConfig,
    ServiceAccountConfig,
    ServicePrincipalConfig,
)
from terraflow._terraflow_errors import CloudCommandError, ConfigError
from terraflow._terraflow_models import ExecutionContext

logger = logging.getLogger(__name__)

IAM_ROLE_ARN = re.compile(r"^arn:aws:iam::\d{12}:role/[\w+=,.@-]+$")
MIN_SESSION_SECONDS = 900
MAX_SESSION_SECONDS = 43200
DEFAULT_SESSION_NAME = "terraflow-session"
DEFAULT_SESSION_SECONDS = 3600
GCP_PROJECT_KEYS = ("GCLOUD_PROJECT", "GCP_PROJECT", "GOOGLE_CLOUD_PROJECT")


class AwsAssumeRoleAuth:
    """Assume an IAM role with ``aws sts assume-role``."""

    name = "aws-assume-role"

    def _settings(self, auth: AuthConfig) -> AssumeRoleConfig:
        if auth.assume_role is None:
            msg = "AWS assume role configuration is required"
            raise ConfigError(msg)
        return auth.assume_role

    def validate(
        self, auth: AuthConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None:
        """Check the role ARN format and session duration.

        Examples
        --------
        >>> arn = "arn:aws:iam::123456789012:role/Deploy"
        >>> AwsAssumeRoleAuth().validate(
        ...     AuthConfig(assume_role=AssumeRoleConfig(role_arn=arn))
        ... )
        """
        settings = self._settings(auth)
        if not settings.role_arn:
            msg = 'AWS assume role requires "role_arn" configuration'
            raise ConfigError(msg)
        if not IAM_ROLE_ARN.match(settings.role_arn):
            msg = (
                f"Invalid role_arn format: {settings.role_arn}. "
                "Expected format: arn:aws:iam::123456789012:role/RoleName"
            )
            raise ConfigError(msg)
        duration = settings.duration
        if duration is not None and not (
            MIN_SESSION_SECONDS <= duration <= MAX_SESSION_SECONDS
        ):
            msg = (
                f"Invalid duration: {duration}. Duration must be between "
                f"{MIN_SESSION_SECONDS} and {MAX_SESSION_SECONDS} seconds"
            )
            raise ConfigError(msg)

    def authenticate(
        self,
        auth: AuthConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Assume the configured role and return temporary credentials.

        Returns
        -------
        dict[str, str]
            ``AWS_ACCESS_KEY_ID``, ``AWS_SECRET_ACCESS_KEY`` and
            ``AWS_SESSION_TOKEN``.

        Raises
        ------
        ConfigError
            When the role cannot be assumed.
        """
        settings = self._settings(auth)
        role_arn = settings.role_arn or ""
        environ = dict(env if env is not None else context.env)
        region = context.cloud.aws_region or environ.get("AWS_REGION")
        environ.setdefault("AWS_REGION", region or "us-east-1")
        logger.debug("Assuming AWS IAM role %s", role_arn)
        try:
            output = run_command(
                "aws",
                "sts",
                "assume-role",
                "--role-arn",
                role_arn,
                "--role-session-name",
                settings.session_name or DEFAULT_SESSION_NAME,
                "--duration-seconds",
                str(settings.duration or DEFAULT_SESSION_SECONDS),
                "--output",
                "json",
                context=CommandContext(env=environ),
            )
        except CloudCommandError as exc:
            text = str(exc)
            if "AccessDenied" in text:
                msg = (
                    f"Access denied when assuming role {role_arn}. Ensure your AWS "
                    "credentials have permission to assume this role."
                )
            elif "NoSuchEntity" in text:
                msg = f"Role {role_arn} does not exist."
            elif "MalformedPolicyDocument" in text:
                msg = (
                    f"Invalid role configuration for {role_arn}. "
                    "Check the role's trust policy."
                )
            else:
                msg = f"Failed to assume role {role_arn}: {exc}"
            raise ConfigError(msg) from exc

        try:
            credentials = json.loads(output)["Credentials"]
        except (json.JSONDecodeError, KeyError, TypeError) as exc:
            msg = f"AssumeRole response for {role_arn} did not contain credentials"
            raise ConfigError(msg) from exc
        if expiration := credentials.get("Expiration"):
            logger.debug("Credentials expire at %s", expiration)
        logger.info("Assumed role %s", role_arn)
        return {
            "AWS_ACCESS_KEY_ID": credentials.get("AccessKeyId", ""),
            "AWS_SECRET_ACCESS_KEY": credentials.get("SecretAccessKey", ""),
            "AWS_SESSION_TOKEN": credentials.get("SessionToken", ""),
        }


class AzureServicePrincipalAuth:
    """Export an Azure service principal for the azurerm provider."""

    name = "azure-service-principal"

    def _settings(self, auth: AuthConfig) -> ServicePrincipalConfig:
        if auth.service_principal is None:
            msg = "Azure service principal configuration is required"
            raise ConfigError(msg)
        return auth.service_principal

    def validate(
        self, auth: AuthConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None:
        settings = self._settings(auth)
        if not settings.client_id:
            msg = 'Azure service principal requires "client_id" configuration'
            raise ConfigError(msg)
        if not settings.tenant_id:
            msg = 'Azure service principal requires "tenant_id" configuration'
            raise ConfigError(msg)
        if settings.client_secret is not None and not settings.client_secret:
            msg = 'Azure service principal "client_secret" cannot be empty if provided'
            raise ConfigError(msg)

    def authenticate(
        self,
        auth: AuthConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        settings = self._settings(auth)
        environ = env if env is not None else context.env
        if not settings.client_secret:
            logger.debug(
                "Service principal has no client_secret; assuming managed "
                "identity or certificate authentication"
            )
        credentials = {
            "ARM_CLIENT_ID": settings.client_id or "",
            "ARM_TENANT_ID": settings.tenant_id or "",
        }
        subscription = context.cloud.azure_subscription_id or environ.get(
            "ARM_SUBSCRIPTION_ID"
        )
        if subscription:
            credentials["ARM_SUBSCRIPTION_ID"] = subscription
        if settings.client_secret:
            credentials["ARM_CLIENT_SECRET"] = settings.client_secret
        logger.info("Configured Azure service principal %s", settings.client_id)
        return credentials


class GcpServiceAccountAuth:
    """Point Google tooling at a service account key file."""

    name = "gcp-service-account"

    def _settings(self, auth: AuthConfig) -> ServiceAccountConfig:
        if auth.service_account is None:
            msg = "GCP service account configuration is required"
            raise ConfigError(msg)
        return auth.service_account

    def _read_key(self, key_file: Path) -> dict[str, Any]:
        try:
            content = key_file.read_text(encoding="utf-8")
        except OSError as exc:
            msg = f"Failed to read service account key file {key_file}: {exc}"
            raise ConfigError(msg) from exc
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            msg = f"Service account key file {key_file} is not valid JSON"
            raise ConfigError(msg) from exc
        if not isinstance(payload, dict):
            msg = f"Service account key file {key_file} is not valid JSON"
            raise ConfigError(msg)
        return payload

    def validate(
        self, auth: AuthConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None:
        settings = self._settings(auth)
        if not settings.key_file:
            msg = 'GCP service account requires "key_file" configuration'
            raise ConfigError(msg)
        key_file = Path(settings.key_file)
        if not key_file.is_file():
            msg = f"Service account key file {key_file} does not exist"
            raise ConfigError(msg)
        payload = self._read_key(key_file)
        if payload.get("type") != "service_account":
            msg = (
                f"Key file {key_file} is not a service account key; "
                'expected "type": "service_account"'
            )
            raise ConfigError(msg)
        if not payload.get("project_id"):
            logger.warning("Service account key file %s has no project_id", key_file)

    def authenticate(
        self,
        auth: AuthConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        settings = self._settings(auth)
        environ = env if env is not None else context.env
        key_file = settings.key_file or ""
        payload = self._read_key(Path(key_file))
        credentials = {"GOOGLE_APPLICATION_CREDENTIALS": key_file}
        project = (
            payload.get("project_id")
            or context.cloud.gcp_project_id
            or environ.get("GOOGLE_CLOUD_PROJECT")
            or environ.get("GCLOUD_PROJECT")
            or environ.get("GCP_PROJECT")
        )
        if project:
            credentials.update({key: str(project) for key in GCP_PROJECT_KEYS})
        logger.info("Using GCP service account key %s", key_file)
        return credentials
