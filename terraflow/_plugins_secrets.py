"""Secrets capability plugins.

Every plugin returns a map of ``TF_VAR_``-prefixed variables. Secret payloads
that decode to a JSON object contribute one variable per key; values are
rendered with :func:`terraflow._environment.format_tf_var`.
"""

from __future__ import annotations

import json
import logging
from collections import abc as cabc
from typing import Any

from terraflow._cloud import CommandContext, run_command
from terraflow._config_models import SecretsConfig
from terraflow._environment import TF_VAR_PREFIX, to_tf_vars
from terraflow._terraflow_errors import CloudCommandError, ConfigError
from terraflow._terraflow_models import ExecutionContext

logger = logging.getLogger(__name__)

_AZURE_AUTH_FAILURES = (
    "AuthenticationFailed",
    "Unauthorized",
    "Forbidden",
    "az login",
)


def _require_config(descriptor: SecretsConfig, label: str) -> dict[str, Any]:
    if not descriptor.config:
        msg = f"{label} requires configuration"
        raise ConfigError(msg)
    return descriptor.config


def _require_field(settings: cabc.Mapping[str, Any], label: str, name: str) -> str:
    value = settings.get(name)
    if value is None or value == "":
        msg = f'{label} requires "{name}" configuration'
        raise ConfigError(msg)
    return str(value)


def _env_first(env: cabc.Mapping[str, str], *keys: str) -> str | None:
    for key in keys:
        if value := env.get(key):
            return value
    return None


def _decode_secret(name: str, payload: str) -> dict[str, str]:
    """Map a secret payload to ``TF_VAR_*`` entries.

    Examples
    --------
    >>> _decode_secret("db", '{"password": "p", "port": 5432}')
    {'TF_VAR_password': 'p', 'TF_VAR_port': '5432'}
    >>> _decode_secret("token", "plain")
    {'TF_VAR_token': 'plain'}
    """
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError:
        decoded = None
    if isinstance(decoded, dict):
        return to_tf_vars(decoded)
    return {f"{TF_VAR_PREFIX}{name}": payload}


class EnvSecrets:
    """Secrets already present in the environment; nothing to fetch."""

    name = "env"

    def validate(
        self, descriptor: SecretsConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None:
        return None

    def fetch(
        self,
        descriptor: SecretsConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        return {}


class AwsSecrets:
    """AWS Secrets Manager, read through ``aws secretsmanager``."""

    name = "aws-secrets"
    label = "AWS Secrets Manager"

    def _region(
        self,
        settings: cabc.Mapping[str, Any],
        env: cabc.Mapping[str, str],
        context: ExecutionContext | None = None,
    ) -> str | None:
        if region := settings.get("region"):
            return str(region)
        if context is not None and context.cloud.aws_region:
            return context.cloud.aws_region
        return _env_first(env, "AWS_REGION", "AWS_DEFAULT_REGION")

    def validate(
        self, descriptor: SecretsConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None:
        settings = _require_config(descriptor, self.label)
        _require_field(settings, self.label, "secret_name")
        if not self._region(settings, env or {}):
            msg = (
                f'{self.label} requires "region" configuration or the '
                "AWS_REGION/AWS_DEFAULT_REGION environment variable"
            )
            raise ConfigError(msg)

    def fetch(
        self,
        descriptor: SecretsConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Fetch a JSON object secret and expose each key as ``TF_VAR_<key>``.

        Raises
        ------
        ConfigError
            When the secret is missing, access is denied, or the payload is
            not a JSON object.
        """
        environ = env if env is not None else context.env
        settings = _require_config(descriptor, self.label)
        secret_name = _require_field(settings, self.label, "secret_name")
        region = self._region(settings, environ, context) or "us-east-1"
        logger.debug("Fetching secret %s from AWS Secrets Manager", secret_name)
        try:
            payload = run_command(
                "aws",
                "secretsmanager",
                "get-secret-value",
                "--secret-id",
                secret_name,
                "--region",
                region,
                "--query",
                "SecretString",
                "--output",
                "text",
                context=CommandContext(env=environ),
            ).strip()
        except CloudCommandError as exc:
            text = str(exc)
            if "ResourceNotFoundException" in text:
                msg = f"Secret {secret_name} not found in region {region}"
            elif "AccessDenied" in text:
                msg = (
                    f"Access denied to secret {secret_name}. Ensure your AWS "
                    "credentials allow secretsmanager:GetSecretValue"
                )
            else:
                msg = f"Failed to fetch secret {secret_name}: {exc}"
            raise ConfigError(msg) from exc

        if not payload or payload == "None":
            msg = f"Secret {secret_name} does not contain a SecretString value"
            raise ConfigError(msg)
        try:
            decoded = json.loads(payload)
        except json.JSONDecodeError as exc:
            msg = f"Secret {secret_name} is not valid JSON: {exc}"
            raise ConfigError(msg) from exc
        if not isinstance(decoded, dict):
            msg = f"Secret {secret_name} must contain a JSON object"
            raise ConfigError(msg)
        secrets = to_tf_vars(decoded)
        logger.info("Loaded %d variables from secret %s", len(secrets), secret_name)
        return secrets


class AzureKeyVaultSecrets:
    """Azure Key Vault, read through ``az keyvault secret``."""

    name = "azure-keyvault"
    label = "Azure Key Vault"

    def validate(
        self, descriptor: SecretsConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None:
        settings = _require_config(descriptor, self.label)
        _require_field(settings, self.label, "vault_name")

    def _az(self, env: cabc.Mapping[str, str], vault: str, *args: str) -> Any:
        try:
            output = run_command(
                "az",
                "keyvault",
                "secret",
                *args,
                "--vault-name",
                vault,
                "--output",
                "json",
                context=CommandContext(env=env),
            )
        except CloudCommandError as exc:
            text = str(exc)
            if "NotFound" in text or "not found" in text:
                msg = f"Key Vault {vault} or the requested secret was not found"
            elif any(marker in text for marker in _AZURE_AUTH_FAILURES):
                msg = (
                    f"Authentication failed for Key Vault {vault}. "
                    "Run 'az login' or configure a service principal"
                )
            else:
                msg = f"Failed to read Key Vault {vault}: {exc}"
            raise ConfigError(msg) from exc
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            msg = f"az returned invalid JSON for Key Vault {vault}: {exc}"
            raise ConfigError(msg) from exc

    def _secret_value(
        self, env: cabc.Mapping[str, str], vault: str, name: str
    ) -> str:
        payload = self._az(env, vault, "show", "--name", name)
        value = payload.get("value") if isinstance(payload, dict) else None
        return "" if value is None else str(value)

    def fetch(
        self,
        descriptor: SecretsConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Fetch one named secret, or every secret in the vault."""
        environ = env if env is not None else context.env
        settings = _require_config(descriptor, self.label)
        vault = _require_field(settings, self.label, "vault_name")
        secret_name = settings.get("secret_name")
        if secret_name:
            return _decode_secret(
                str(secret_name), self._secret_value(environ, vault, str(secret_name))
            )

        listing = self._az(environ, vault, "list")
        secrets: dict[str, str] = {}
        for entry in listing if isinstance(listing, list) else []:
            name = entry.get("name") if isinstance(entry, dict) else None
            if not name:
                continue
            value = self._secret_value(environ, vault, name)
            secrets[f"{TF_VAR_PREFIX}{name}"] = value
        logger.info("Loaded %d secrets from Key Vault %s", len(secrets), vault)
        return secrets


class GcpSecretManager:
    """GCP Secret Manager, read through ``gcloud secrets``."""

    name = "gcp-secret-manager"
    label = "GCP Secret Manager"

    def validate(
        self, descriptor: SecretsConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None:
        settings = _require_config(descriptor, self.label)
        _require_field(settings, self.label, "secret_name")

    def _project(
        self,
        settings: cabc.Mapping[str, Any],
        context: ExecutionContext,
        env: cabc.Mapping[str, str],
    ) -> str:
        project = (
            settings.get("project_id")
            or context.cloud.gcp_project_id
            or _env_first(env, "GOOGLE_CLOUD_PROJECT", "GCLOUD_PROJECT", "GCP_PROJECT")
        )
        if not project:
            try:
                project = run_command(
                    "gcloud",
                    "config",
                    "get-value",
                    "project",
                    context=CommandContext(env=env),
                ).strip()
            except CloudCommandError as exc:
                logger.debug("gcloud project lookup failed: %s", exc)
        if not project:
            msg = (
                "GCP project_id is required. Set secrets.config.project_id, "
                "GOOGLE_CLOUD_PROJECT, or run 'gcloud config set project'"
            )
            raise ConfigError(msg)
        return str(project)

    def fetch(
        self,
        descriptor: SecretsConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        environ = env if env is not None else context.env
        settings = _require_config(descriptor, self.label)
        secret_name = _require_field(settings, self.label, "secret_name")
        project = self._project(settings, context, environ)
        version = str(settings.get("version") or "latest")
        try:
            payload = run_command(
                "gcloud",
                "secrets",
                "versions",
                "access",
                version,
                "--secret",
                secret_name,
                "--project",
                project,
                context=CommandContext(env=environ),
            )
        except CloudCommandError as exc:
            text = str(exc)
            if "NOT_FOUND" in text or "not found" in text:
                msg = f"Secret {secret_name} not found in project {project}"
            elif "PERMISSION_DENIED" in text:
                msg = (
                    f"Access denied to secret {secret_name} in project {project}. "
                    "Ensure the caller has roles/secretmanager.secretAccessor"
                )
            else:
                msg = f"Failed to fetch secret {secret_name}: {exc}"
            raise ConfigError(msg) from exc
        return _decode_secret(secret_name, payload.rstrip("\n"))
