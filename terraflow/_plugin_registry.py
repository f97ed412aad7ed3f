"""Resolve capability plugins by kind and name.

The registry is a static table per capability kind, keyed by the class name
the naming convention produces (``s3`` -> ``S3Backend``). When the convention
misses, every registered plugin of that kind is scanned for a matching
``name`` attribute, so providers whose class name diverges from the
convention still resolve.

Examples
--------
>>> plugin_identifier("backend", "s3")
'S3Backend'
>>> resolve_secrets("aws-secrets").name
'aws-secrets'
"""

from __future__ import annotations

import logging
from collections import abc as cabc
from typing import Any, Literal, Protocol, cast

from terraflow._config_models import AuthConfig, BackendConfig, SecretsConfig
from terraflow._plugins_auth import (
    AwsAssumeRoleAuth,
    AzureServicePrincipalAuth,
    GcpServiceAccountAuth,
)
from terraflow._plugins_backends import (
    AzurermBackend,
    GcsBackend,
    LocalBackend,
    S3Backend,
)
from terraflow._plugins_secrets import (
    AwsSecrets,
    AzureKeyVaultSecrets,
    EnvSecrets,
    GcpSecretManager,
)
from terraflow._terraflow_errors import PluginNotFoundError
from terraflow._terraflow_models import ExecutionContext

logger = logging.getLogger(__name__)

PluginKind = Literal["backend", "secrets", "auth"]

_SUFFIXES: dict[str, str] = {
    "backend": "Backend",
    "secrets": "Secrets",
    "auth": "Auth",
}


class BackendPlugin(Protocol):
    name: str

    def validate(
        self, descriptor: BackendConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None: ...

    def init_args(
        self, descriptor: BackendConfig, context: ExecutionContext
    ) -> list[str]: ...


class SecretsPlugin(Protocol):
    name: str

    def validate(
        self, descriptor: SecretsConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None: ...

    def fetch(
        self,
        descriptor: SecretsConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str] | None = None,
    ) -> dict[str, str]: ...


class AuthPlugin(Protocol):
    name: str

    def validate(
        self, auth: AuthConfig, env: cabc.Mapping[str, str] | None = None
    ) -> None: ...

    def authenticate(
        self,
        auth: AuthConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str] | None = None,
    ) -> dict[str, str]: ...


def _table(*plugins: object) -> dict[str, Any]:
    return {type(plugin).__name__: plugin for plugin in plugins}


REGISTRY: dict[str, dict[str, Any]] = {
    "backend": _table(LocalBackend(), S3Backend(), AzurermBackend(), GcsBackend()),
    "secrets": _table(
        EnvSecrets(), AwsSecrets(), AzureKeyVaultSecrets(), GcpSecretManager()
    ),
    "auth": _table(
        AwsAssumeRoleAuth(), AzureServicePrincipalAuth(), GcpServiceAccountAuth()
    ),
}


def plugin_identifier(kind: str, name: str) -> str:
    """Return the conventional class name for ``name`` of ``kind``.

    Name segments separated by ``-`` or ``_`` are capitalised and joined,
    then the kind suffix is appended.

    Examples
    --------
    >>> plugin_identifier("secrets", "azure-keyvault")
    'AzureKeyvaultSecrets'
    >>> plugin_identifier("auth", "aws-assume-role")
    'AwsAssumeRoleAuth'
    """
    parts = name.replace("_", "-").split("-")
    stem = "".join(part[:1].upper() + part[1:] for part in parts if part)
    return f"{stem}{_SUFFIXES.get(kind, '')}"


def resolve_plugin(kind: PluginKind, name: str) -> Any:
    """Return the plugin registered for ``kind`` and ``name``.

    Raises
    ------
    PluginNotFoundError
        When neither the naming convention nor the ``name`` scan matches.
    """
    plugins = REGISTRY.get(kind, {})
    identifier = plugin_identifier(kind, name)
    if identifier in plugins:
        return plugins[identifier]
    for plugin in plugins.values():
        if getattr(plugin, "name", None) == name:
            logger.debug(
                "Resolved %s plugin %r by name scan (%s)",
                kind,
                name,
                type(plugin).__name__,
            )
            return plugin
    raise PluginNotFoundError(kind, name)


def resolve_backend(name: str) -> BackendPlugin:
    return cast(BackendPlugin, resolve_plugin("backend", name))


def resolve_secrets(name: str) -> SecretsPlugin:
    return cast(SecretsPlugin, resolve_plugin("secrets", name))


def resolve_auth(name: str) -> AuthPlugin:
    return cast(AuthPlugin, resolve_plugin("auth", name))
