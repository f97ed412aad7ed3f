"""Typed configuration model for terraflow.

Every field defaults to ``None`` which means "absent": merging a tier that
leaves a field absent never erases a value contributed by a lower tier.
Scalars are overridden when present, nested descriptors merge field by field
and free-form maps merge key by key.

Examples
--------
>>> base = TerraflowConfig(backend=BackendConfig(type="s3", config={"bucket": "b"}))
>>> cli = TerraflowConfig(workspace="prod", backend=BackendConfig(type="s3"))
>>> merged = base.merge(cli)
>>> (merged.workspace, merged.backend.config)
('prod', {'bucket': 'b'})
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any, TypeVar

from terraflow._terraflow_errors import ConfigError

WORKSPACE_STRATEGIES = ("cli", "env", "tag", "branch", "hostname")
LOG_LEVELS = ("error", "warn", "info", "debug")

T = TypeVar("T")


def _pick(current: T | None, incoming: T | None) -> T | None:
    return current if incoming is None else incoming


def _merge_maps(
    current: dict[str, Any] | None, incoming: dict[str, Any] | None
) -> dict[str, Any] | None:
    if incoming is None:
        return current
    return {**(current or {}), **incoming}


def _merge_nested(current: Any, incoming: Any) -> Any:
    if incoming is None:
        return current
    if current is None:
        return incoming
    return current.merge(incoming)


def _optional_str(payload: Mapping[str, Any], key: str, section: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        msg = f"Configuration field {section}.{key} must be a scalar"
        raise ConfigError(msg)
    return str(value)


def _optional_bool(payload: Mapping[str, Any], key: str, section: str) -> bool | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        msg = f"Configuration field {section}.{key} must be a boolean"
        raise ConfigError(msg)
    return value


def _optional_mapping(
    payload: Mapping[str, Any], key: str, section: str
) -> dict[str, Any] | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        msg = f"Configuration field {section}.{key} must be a mapping"
        raise ConfigError(msg)
    return dict(value)


def _drop_absent(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


@dataclass(frozen=True, slots=True)
class BackendConfig:
    """Backend descriptor: a type name plus free-form backend settings."""

    type: str | None = None
    config: dict[str, Any] | None = None

    def merge(self, other: BackendConfig) -> BackendConfig:
        return BackendConfig(
            type=_pick(self.type, other.type),
            config=_merge_maps(self.config, other.config),
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> BackendConfig:
        return cls(
            type=_optional_str(payload, "type", "backend"),
            config=_optional_mapping(payload, "config", "backend"),
        )

    def to_mapping(self) -> dict[str, Any]:
        return _drop_absent({"type": self.type, "config": self.config})


@dataclass(frozen=True, slots=True)
class SecretsConfig:
    """Secrets descriptor: a provider name plus provider settings."""

    provider: str | None = None
    config: dict[str, Any] | None = None

    def merge(self, other: SecretsConfig) -> SecretsConfig:
        return SecretsConfig(
            provider=_pick(self.provider, other.provider),
            config=_merge_maps(self.config, other.config),
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> SecretsConfig:
        return cls(
            provider=_optional_str(payload, "provider", "secrets"),
            config=_optional_mapping(payload, "config", "secrets"),
        )

    def to_mapping(self) -> dict[str, Any]:
        return _drop_absent({"provider": self.provider, "config": self.config})


@dataclass(frozen=True, slots=True)
class AssumeRoleConfig:
    """AWS IAM role assumption parameters."""

    role_arn: str | None = None
    session_name: str | None = None
    duration: int | None = None

    def merge(self, other: AssumeRoleConfig) -> AssumeRoleConfig:
        return AssumeRoleConfig(
            role_arn=_pick(self.role_arn, other.role_arn),
            session_name=_pick(self.session_name, other.session_name),
            duration=_pick(self.duration, other.duration),
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> AssumeRoleConfig:
        duration = payload.get("duration")
        if duration is not None and (
            isinstance(duration, bool) or not isinstance(duration, int)
        ):
            msg = "Configuration field auth.assume_role.duration must be an integer"
            raise ConfigError(msg)
        return cls(
            role_arn=_optional_str(payload, "role_arn", "auth.assume_role"),
            session_name=_optional_str(payload, "session_name", "auth.assume_role"),
            duration=duration,
        )


@dataclass(frozen=True, slots=True)
class ServicePrincipalConfig:
    """Azure service principal parameters."""

    client_id: str | None = None
    tenant_id: str | None = None
    client_secret: str | None = None

    def merge(self, other: ServicePrincipalConfig) -> ServicePrincipalConfig:
        return ServicePrincipalConfig(
            client_id=_pick(self.client_id, other.client_id),
            tenant_id=_pick(self.tenant_id, other.tenant_id),
            client_secret=_pick(self.client_secret, other.client_secret),
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> ServicePrincipalConfig:
        section = "auth.service_principal"
        return cls(
            client_id=_optional_str(payload, "client_id", section),
            tenant_id=_optional_str(payload, "tenant_id", section),
            client_secret=_optional_str(payload, "client_secret", section),
        )


@dataclass(frozen=True, slots=True)
class ServiceAccountConfig:
    """GCP service account parameters."""

    key_file: str | None = None

    def merge(self, other: ServiceAccountConfig) -> ServiceAccountConfig:
        return ServiceAccountConfig(key_file=_pick(self.key_file, other.key_file))

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> ServiceAccountConfig:
        return cls(
            key_file=_optional_str(payload, "key_file", "auth.service_account")
        )


# Auth descriptor attribute -> auth plugin name, in selection order.
AUTH_PLUGIN_NAMES = {
    "assume_role": "aws-assume-role",
    "service_principal": "azure-service-principal",
    "service_account": "gcp-service-account",
}


@dataclass(frozen=True, slots=True)
class AuthConfig:
    """Authentication descriptor; at most one sub-object drives a run."""

    assume_role: AssumeRoleConfig | None = None
    service_principal: ServicePrincipalConfig | None = None
    service_account: ServiceAccountConfig | None = None

    def merge(self, other: AuthConfig) -> AuthConfig:
        return AuthConfig(
            assume_role=_merge_nested(self.assume_role, other.assume_role),
            service_principal=_merge_nested(
                self.service_principal, other.service_principal
            ),
            service_account=_merge_nested(
                self.service_account, other.service_account
            ),
        )

    @property
    def plugin_name(self) -> str | None:
        """Return the auth plugin selected by the populated sub-object.

        Examples
        --------
        >>> AuthConfig(assume_role=AssumeRoleConfig(role_arn="arn")).plugin_name
        'aws-assume-role'
        >>> AuthConfig().plugin_name is None
        True
        """
        for attribute, name in AUTH_PLUGIN_NAMES.items():
            if getattr(self, attribute) is not None:
                return name
        return None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> AuthConfig:
        assume_role = _optional_mapping(payload, "assume_role", "auth")
        service_principal = _optional_mapping(payload, "service_principal", "auth")
        service_account = _optional_mapping(payload, "service_account", "auth")
        return cls(
            assume_role=(
                AssumeRoleConfig.from_mapping(assume_role)
                if assume_role is not None
                else None
            ),
            service_principal=(
                ServicePrincipalConfig.from_mapping(service_principal)
                if service_principal is not None
                else None
            ),
            service_account=(
                ServiceAccountConfig.from_mapping(service_account)
                if service_account is not None
                else None
            ),
        )

    def to_mapping(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for attribute in AUTH_PLUGIN_NAMES:
            value = getattr(self, attribute)
            if value is not None:
                result[attribute] = _drop_absent(
                    {item.name: getattr(value, item.name) for item in fields(value)}
                )
        return result


@dataclass(frozen=True, slots=True)
class ValidationRules:
    """Validation settings read from the ``validations`` section."""

    require_git_commit: bool | None = None
    allowed_workspaces: tuple[str, ...] | None = None

    def merge(self, other: ValidationRules) -> ValidationRules:
        return ValidationRules(
            require_git_commit=_pick(self.require_git_commit, other.require_git_commit),
            allowed_workspaces=_pick(self.allowed_workspaces, other.allowed_workspaces),
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> ValidationRules:
        allowed = payload.get("allowed_workspaces")
        if allowed is not None and not isinstance(allowed, list):
            msg = "Configuration field validations.allowed_workspaces must be a list"
            raise ConfigError(msg)
        return cls(
            require_git_commit=_optional_bool(
                payload, "require_git_commit", "validations"
            ),
            allowed_workspaces=(
                tuple(str(item) for item in allowed) if allowed is not None else None
            ),
        )

    def to_mapping(self) -> dict[str, Any]:
        return _drop_absent(
            {
                "require_git_commit": self.require_git_commit,
                "allowed_workspaces": (
                    list(self.allowed_workspaces)
                    if self.allowed_workspaces is not None
                    else None
                ),
            }
        )


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Logging preferences for terraflow and the provisioner."""

    level: str | None = None
    terraform_log: bool | None = None
    terraform_log_level: str | None = None

    def merge(self, other: LoggingConfig) -> LoggingConfig:
        return LoggingConfig(
            level=_pick(self.level, other.level),
            terraform_log=_pick(self.terraform_log, other.terraform_log),
            terraform_log_level=_pick(
                self.terraform_log_level, other.terraform_log_level
            ),
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> LoggingConfig:
        level = _optional_str(payload, "level", "logging")
        if level is not None and level.lower() not in LOG_LEVELS:
            choices = ", ".join(LOG_LEVELS)
            msg = f"Configuration field logging.level must be one of {choices}"
            raise ConfigError(msg)
        return cls(
            level=level.lower() if level is not None else None,
            terraform_log=_optional_bool(payload, "terraform_log", "logging"),
            terraform_log_level=_optional_str(
                payload, "terraform_log_level", "logging"
            ),
        )

    def to_mapping(self) -> dict[str, Any]:
        return _drop_absent(
            {
                "level": self.level,
                "terraform_log": self.terraform_log,
                "terraform_log_level": self.terraform_log_level,
            }
        )


@dataclass(frozen=True, slots=True)
class TerraflowConfig:
    """Resolved or partial terraflow configuration."""

    workspace: str | None = None
    working_dir: str | None = None
    skip_commit_check: bool | None = None
    backend: BackendConfig | None = None
    secrets: SecretsConfig | None = None
    auth: AuthConfig | None = None
    variables: dict[str, Any] | None = None
    workspace_strategy: tuple[str, ...] | None = None
    validations: ValidationRules | None = None
    logging: LoggingConfig | None = None

    def merge(self, other: TerraflowConfig) -> TerraflowConfig:
        """Overlay *other* on top of this configuration.

        Examples
        --------
        >>> low = TerraflowConfig(variables={"a": 1, "b": 2})
        >>> low.merge(TerraflowConfig(variables={"b": 3})).variables
        {'a': 1, 'b': 3}
        """
        return TerraflowConfig(
            workspace=_pick(self.workspace, other.workspace),
            working_dir=_pick(self.working_dir, other.working_dir),
            skip_commit_check=_pick(self.skip_commit_check, other.skip_commit_check),
            backend=_merge_nested(self.backend, other.backend),
            secrets=_merge_nested(self.secrets, other.secrets),
            auth=_merge_nested(self.auth, other.auth),
            variables=_merge_maps(self.variables, other.variables),
            workspace_strategy=_pick(self.workspace_strategy, other.workspace_strategy),
            validations=_merge_nested(self.validations, other.validations),
            logging=_merge_nested(self.logging, other.logging),
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> TerraflowConfig:
        """Build a configuration from a parsed ``.tfwconfig.yml`` document.

        Raises
        ------
        ConfigError
            When a section has the wrong shape or an unknown workspace
            strategy is listed.
        """
        backend = _optional_mapping(payload, "backend", "root")
        secrets = _optional_mapping(payload, "secrets", "root")
        auth = _optional_mapping(payload, "auth", "root")
        validations = _optional_mapping(payload, "validations", "root")
        logging_section = _optional_mapping(payload, "logging", "root")
        return cls(
            workspace=_optional_str(payload, "workspace", "root"),
            working_dir=_optional_str(payload, "working-dir", "root"),
            skip_commit_check=_optional_bool(payload, "skip-commit-check", "root"),
            backend=(
                BackendConfig.from_mapping(backend) if backend is not None else None
            ),
            secrets=(
                SecretsConfig.from_mapping(secrets) if secrets is not None else None
            ),
            auth=AuthConfig.from_mapping(auth) if auth is not None else None,
            variables=_optional_mapping(payload, "variables", "root"),
            workspace_strategy=_parse_strategy(payload.get("workspace_strategy")),
            validations=(
                ValidationRules.from_mapping(validations)
                if validations is not None
                else None
            ),
            logging=(
                LoggingConfig.from_mapping(logging_section)
                if logging_section is not None
                else None
            ),
        )

    def to_mapping(self) -> dict[str, Any]:
        """Render the configuration using the on-disk key names."""
        return _drop_absent(
            {
                "workspace": self.workspace,
                "working-dir": self.working_dir,
                "skip-commit-check": self.skip_commit_check,
                "backend": self.backend.to_mapping() if self.backend else None,
                "secrets": self.secrets.to_mapping() if self.secrets else None,
                "auth": self.auth.to_mapping() if self.auth else None,
                "variables": self.variables,
                "workspace_strategy": (
                    list(self.workspace_strategy)
                    if self.workspace_strategy is not None
                    else None
                ),
                "validations": (
                    self.validations.to_mapping() if self.validations else None
                ),
                "logging": self.logging.to_mapping() if self.logging else None,
            }
        )


def _parse_strategy(value: object) -> tuple[str, ...] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        msg = "Configuration field workspace_strategy must be a list"
        raise ConfigError(msg)
    strategy = tuple(str(item) for item in value)
    unknown = [item for item in strategy if item not in WORKSPACE_STRATEGIES]
    if unknown:
        msg = (
            f"Unknown workspace strategy {', '.join(unknown)}; "
            f"expected one of {', '.join(WORKSPACE_STRATEGIES)}"
        )
        raise ConfigError(msg)
    return strategy
