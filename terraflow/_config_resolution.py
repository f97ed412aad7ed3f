"""Layered configuration resolution for terraflow.

Four tiers are built independently and merged in ascending priority:
hard-coded defaults, the ``.tfwconfig.yml`` file, ``TERRAFLOW_*``
environment variables and finally command-line options.
"""

from __future__ import annotations

import logging
import os
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from terraflow._config_models import (
    AssumeRoleConfig,
    AuthConfig,
    BackendConfig,
    LoggingConfig,
    SecretsConfig,
    TerraflowConfig,
)
from terraflow._terraflow_errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".tfwconfig.yml"
DEFAULT_WORKING_DIR = "./terraform"

DEFAULTS = TerraflowConfig(
    working_dir=DEFAULT_WORKING_DIR,
    skip_commit_check=False,
    backend=BackendConfig(type="local"),
    logging=LoggingConfig(level="info"),
)


@dataclass(frozen=True, slots=True)
class CliOptions:
    """Global options accepted on the command line.

    ``None`` means the flag was not given and leaves lower tiers untouched.
    """

    config: str | None = None
    workspace: str | None = None
    backend: str | None = None
    secrets: str | None = None
    skip_commit_check: bool | None = None
    working_dir: str | None = None
    assume_role: str | None = None
    verbose: bool = False
    debug: bool = False
    dry_run: bool = False


def parse_bool(value: str | None, *, default: bool = False) -> bool:
    """Parse a boolean-like string.

    Parameters
    ----------
    value
        Raw string value to parse.
    default
        Default value when ``value`` is ``None``.

    Returns
    -------
    bool
        ``True`` for ``true``, ``1`` or ``yes`` in any case, ``False`` for
        anything else.

    Examples
    --------
    >>> parse_bool(" YES ")
    True
    >>> parse_bool("on")
    False
    """
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes")


def _resolve_against(cwd: Path, value: str) -> Path:
    candidate = Path(value)
    return candidate if candidate.is_absolute() else cwd / candidate


def config_file_path(
    cli: CliOptions, environment: cabc.Mapping[str, str], cwd: Path
) -> Path:
    """Return the configuration file location.

    ``--config`` wins over ``TERRAFLOW_CONFIG``; otherwise
    ``<cwd>/.tfwconfig.yml`` is used. Relative paths resolve against *cwd*.

    Examples
    --------
    >>> config_file_path(CliOptions(), {}, Path("/repo"))
    PosixPath('/repo/.tfwconfig.yml')
    """
    if cli.config:
        return _resolve_against(cwd, cli.config)
    if env_path := environment.get("TERRAFLOW_CONFIG"):
        return _resolve_against(cwd, env_path)
    return cwd / CONFIG_FILE_NAME


def parse_config_file(content: str | None, source: str) -> TerraflowConfig:
    """Parse configuration file text into the file tier.

    Absent content yields an empty configuration. Unparseable YAML or a
    non-mapping document is logged as a warning and also yields an empty
    configuration. A section with the wrong shape is dropped on its own,
    with a warning, so the rest of the file still applies.
    """
    if content is None:
        return TerraflowConfig()
    try:
        payload = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        logger.warning("Failed to load config file %s: %s", source, exc)
        return TerraflowConfig()
    if payload is None:
        return TerraflowConfig()
    if not isinstance(payload, cabc.Mapping):
        logger.warning(
            "Failed to load config file %s: configuration root must be a mapping",
            source,
        )
        return TerraflowConfig()
    config = TerraflowConfig.from_mapping(_valid_sections(payload, source))
    logger.debug("Loaded configuration from %s", source)
    return config


def _valid_sections(payload: cabc.Mapping[str, Any], source: str) -> dict[str, Any]:
    """Return the top-level entries of *payload* that parse cleanly."""
    kept: dict[str, Any] = {}
    for key, value in payload.items():
        try:
            TerraflowConfig.from_mapping({key: value})
        except ConfigError as exc:
            logger.warning(
                "Ignoring invalid %r section in config file %s: %s", key, source, exc
            )
            continue
        kept[key] = value
    return kept


def config_from_environment(environment: cabc.Mapping[str, str]) -> TerraflowConfig:
    """Build the environment tier from ``TERRAFLOW_*`` variables.

    Empty values are treated as unset.

    Examples
    --------
    >>> config_from_environment({"TERRAFLOW_BACKEND": "s3"}).backend
    BackendConfig(type='s3', config=None)
    """
    skip = environment.get("TERRAFLOW_SKIP_COMMIT_CHECK")
    backend = environment.get("TERRAFLOW_BACKEND")
    secrets = environment.get("TERRAFLOW_SECRETS")
    role_arn = environment.get("TERRAFLOW_ASSUME_ROLE")
    return TerraflowConfig(
        workspace=environment.get("TERRAFLOW_WORKSPACE") or None,
        working_dir=environment.get("TERRAFLOW_WORKING_DIR") or None,
        skip_commit_check=parse_bool(skip) if skip else None,
        backend=BackendConfig(type=backend) if backend else None,
        secrets=SecretsConfig(provider=secrets) if secrets else None,
        auth=(
            AuthConfig(assume_role=AssumeRoleConfig(role_arn=role_arn))
            if role_arn
            else None
        ),
    )


def config_from_cli(cli: CliOptions) -> TerraflowConfig:
    """Build the command-line tier from parsed options."""
    level: str | None = None
    if cli.debug:
        level = "debug"
    elif cli.verbose:
        level = "info"
    return TerraflowConfig(
        workspace=cli.workspace,
        working_dir=cli.working_dir,
        skip_commit_check=cli.skip_commit_check,
        backend=BackendConfig(type=cli.backend) if cli.backend is not None else None,
        secrets=(
            SecretsConfig(provider=cli.secrets) if cli.secrets is not None else None
        ),
        auth=(
            AuthConfig(assume_role=AssumeRoleConfig(role_arn=cli.assume_role))
            if cli.assume_role is not None
            else None
        ),
        logging=LoggingConfig(level=level) if level is not None else None,
    )


def resolve_config(
    cli: CliOptions,
    environment: cabc.Mapping[str, str],
    file_content: str | None,
    source: str = CONFIG_FILE_NAME,
) -> TerraflowConfig:
    """Merge defaults, file, environment and CLI tiers.

    Parameters
    ----------
    cli
        Parsed command-line options.
    environment
        Process environment snapshot.
    file_content
        Raw text of the configuration file, or ``None`` when it is absent.
    source
        Label for the file used in log messages.

    Returns
    -------
    TerraflowConfig
        The merged configuration; the highest tier defining a field wins.

    Examples
    --------
    >>> cfg = resolve_config(
    ...     CliOptions(workspace="prod"), {}, "backend:\\n  type: s3\\n"
    ... )
    >>> (cfg.workspace, cfg.backend.type)
    ('prod', 's3')
    """
    return (
        DEFAULTS.merge(parse_config_file(file_content, source))
        .merge(config_from_environment(environment))
        .merge(config_from_cli(cli))
    )


def load_config(
    cli: CliOptions,
    environment: cabc.Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> TerraflowConfig:
    """Locate and read the configuration file, then resolve every tier."""
    env = os.environ if environment is None else environment
    base = cwd or Path.cwd()
    path = config_file_path(cli, env, base)
    content: str | None = None
    if path.is_file():
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to load config file %s: %s", path, exc)
    return resolve_config(cli, env, content, str(path))


def get_working_dir(config: TerraflowConfig, cwd: Path) -> Path:
    """Return the absolute working directory for *config*.

    Examples
    --------
    >>> get_working_dir(TerraflowConfig(working_dir="infra"), Path("/repo"))
    PosixPath('/repo/infra')
    """
    return _resolve_against(cwd, config.working_dir or DEFAULT_WORKING_DIR)
