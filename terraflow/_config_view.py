"""Presentation helpers for ``terraflow config``: masking and skeletons."""

from __future__ import annotations

import logging
import re
from collections import abc as cabc
from pathlib import Path

from terraflow._terraflow_errors import ConfigError

logger = logging.getLogger(__name__)

MASK = "***MASKED***"

EXCLUDED_FIELDS = frozenset({"role_arn", "kms_key_id", "key", "key_file", "key_id"})
ALWAYS_MASKED_FIELDS = frozenset(
    {
        "client_secret",
        "secret_access_key",
        "session_token",
        "access_key_id",
        "access_key",
        "api_key",
        "password",
        "secret",
        "key",
        "token",
    }
)
SENSITIVE_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"password$",
        r"secret$",
        r".*_secret$",
        r".*_key$",
        r"token$",
        r"credential$",
        r"access.*key$",
        r"session.*token$",
        r"client.*secret$",
    )
)


def is_sensitive_field(name: str) -> bool:
    """Return whether values stored under *name* should be masked.

    Explicit exclusions win over the exact-match list, which wins over the
    suffix patterns.

    Examples
    --------
    >>> is_sensitive_field("client_secret")
    True
    >>> is_sensitive_field("kms_key_id")
    False
    >>> is_sensitive_field("key")
    False
    >>> is_sensitive_field("backend.config.access_key")
    True
    """
    if name in EXCLUDED_FIELDS:
        return False
    lowered = name.lower()
    if lowered in ALWAYS_MASKED_FIELDS:
        return True
    if lowered == "key":
        return False
    return any(pattern.search(name) for pattern in SENSITIVE_PATTERNS)


def mask_sensitive_values(value: object, path: str = "") -> object:
    """Return a copy of *value* with sensitive non-empty strings masked.

    Both the bare key and its dotted path are checked.

    Examples
    --------
    >>> mask_sensitive_values({"auth": {"service_principal": {"client_secret": "s"}}})
    {'auth': {'service_principal': {'client_secret': '***MASKED***'}}}
    >>> mask_sensitive_values({"password": ""})
    {'password': ''}
    """
    if isinstance(value, cabc.Mapping):
        masked: dict[object, object] = {}
        for key, item in value.items():
            full_path = f"{path}.{key}" if path else str(key)
            if is_sensitive_field(str(key)) or is_sensitive_field(full_path):
                masked[key] = MASK if isinstance(item, str) and item else item
            else:
                masked[key] = mask_sensitive_values(item, full_path)
        return masked
    if isinstance(value, list | tuple):
        return [
            mask_sensitive_values(item, f"{path}[{index}]")
            for index, item in enumerate(value)
        ]
    return value


_SKELETON = """\
# terraflow configuration
#
# Values resolve in this order (later wins): built-in defaults, this file,
# TERRAFLOW_* environment variables, command-line flags.

# Workspace name. When unset it is derived from the strategy list below.
# workspace: development

# Directory holding the Terraform configuration.
working-dir: ./terraform

# Allow apply/destroy/import/refresh with uncommitted changes.
skip-commit-check: false

# State backend: local | s3 | azurerm | gcs
backend:
  type: local
  # s3:
  #   config:
  #     bucket: ${AWS_ACCOUNT_ID}-terraform-state
  #     key: app/terraform.tfstate
  #     region: us-east-1
  #     encrypt: true
  #     dynamodb_table: terraform-statelock
  # azurerm:
  #   config:
  #     resource_group_name: terraform-state-rg
  #     storage_account_name: terraformstate
  #     container_name: tfstate
  #     key: app.tfstate
  # gcs:
  #   config:
  #     bucket: terraform-state
  #     prefix: terraform/state

# Secrets provider: env | aws-secrets | azure-keyvault | gcp-secret-manager
# Fetched values are exported as TF_VAR_* variables.
# secrets:
#   provider: aws-secrets
#   config:
#     secret_name: app/terraform-vars
#     region: us-east-1

# Authentication. Configure at most one method.
# auth:
#   assume_role:
#     role_arn: arn:aws:iam::123456789012:role/terraform
#     session_name: terraflow-session
#     duration: 3600
#   service_principal:
#     client_id: 00000000-0000-0000-0000-000000000000
#     tenant_id: 00000000-0000-0000-0000-000000000000
#     client_secret: ${ARM_CLIENT_SECRET}
#   service_account:
#     key_file: /path/to/service-account.json

# Terraform variables, exported as TF_VAR_<name> unless already set.
# variables:
#   environment: development
#   instance_count: 3

# Workspace derivation order. Defaults to all strategies in this order.
# workspace_strategy:
#   - cli
#   - env
#   - tag
#   - branch
#   - hostname

# validations:
#   require_git_commit: true
#   allowed_workspaces:
#     - development
#     - staging
#     - production

logging:
  # error | warn | info | debug
  level: info
  # terraform_log: true
  # terraform_log_level: DEBUG

# ${VAR} placeholders resolve against the environment plus HOSTNAME,
# WORKSPACE, AWS_REGION, AWS_ACCOUNT_ID, AZURE_SUBSCRIPTION_ID,
# GCP_PROJECT_ID, GIT_BRANCH, GIT_TAG, GIT_COMMIT_SHA, GIT_SHORT_SHA,
# GITHUB_REPOSITORY and GITLAB_PROJECT_PATH.
"""


def generate_config_skeleton() -> str:
    """Return a commented ``.tfwconfig.yml`` documenting every section."""
    return _SKELETON


def write_config_skeleton(path: Path) -> Path:
    """Write the skeleton to *path*, creating parent directories.

    Raises
    ------
    ConfigError
        When *path* already exists.
    """
    if path.exists():
        msg = f"Configuration file already exists at {path}"
        raise ConfigError(msg)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_config_skeleton(), encoding="utf-8")
    logger.info("Configuration skeleton created at %s", path)
    return path
