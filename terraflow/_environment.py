"""Environment overlay and the SETUP_ENVIRONMENT stage.

Stages never write ``os.environ``. They write into an
:class:`EnvironmentOverlay`, which is flattened with :meth:`as_environ` and
passed as ``env=`` to each subprocess.

Examples
--------
>>> overlay = EnvironmentOverlay({"TF_VAR_region": "eu-west-1"})
>>> overlay.setdefault("TF_VAR_region", "us-east-1")
False
>>> overlay.as_environ()["TF_VAR_region"]
'eu-west-1'
"""

from __future__ import annotations

import json
import logging
from collections import abc as cabc
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values

from terraflow._cloud import detect_cloud
from terraflow._config_models import LoggingConfig, TerraflowConfig
from terraflow._templates import resolve_object
from terraflow._terraflow_models import CloudInfo, ExecutionContext, VcsInfo

logger = logging.getLogger(__name__)

TF_VAR_PREFIX = "TF_VAR_"
DEFAULT_TF_LOG = "INFO"


class EnvironmentOverlay:
    """Process environment snapshot plus the writes made by terraflow stages.

    Parameters
    ----------
    base
        Snapshot of the environment terraflow was started with.
    """

    def __init__(self, base: cabc.Mapping[str, str]) -> None:
        self._base = dict(base)
        self._overrides: dict[str, str | None] = {}

    def get(self, key: str, default: str | None = None) -> str | None:
        if key in self._overrides:
            value = self._overrides[key]
            return default if value is None else value
        return self._base.get(key, default)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def setdefault(self, key: str, value: str) -> bool:
        """Set *key* only when it is absent; return whether it was written."""
        if key in self:
            return False
        self._overrides[key] = value
        return True

    def override(self, key: str, value: str) -> None:
        """Set *key* unconditionally.

        Reserved for later-priority writes: credentials returned by auth
        plugins and secrets returned by secrets plugins.
        """
        self._overrides[key] = value

    def remove(self, key: str) -> None:
        self._overrides[key] = None

    def setdefaults(self, values: cabc.Mapping[str, str]) -> dict[str, str]:
        """Apply :meth:`setdefault` to every entry; return those written."""
        written: dict[str, str] = {}
        for key, value in values.items():
            if self.setdefault(key, value):
                written[key] = value
        return written

    def overrides(self, values: cabc.Mapping[str, str]) -> None:
        for key, value in values.items():
            self.override(key, value)

    @property
    def changes(self) -> dict[str, str | None]:
        """Keys written by terraflow; ``None`` marks a removed key."""
        return dict(self._overrides)

    def as_environ(self) -> dict[str, str]:
        """Flatten the overlay into a plain environment mapping."""
        environ = dict(self._base)
        for key, value in self._overrides.items():
            if value is None:
                environ.pop(key, None)
            else:
                environ[key] = value
        return environ


@dataclass(frozen=True, slots=True)
class EnvironmentSetupResult:
    """Outcome of :func:`setup_environment`."""

    config: TerraflowConfig
    cloud: CloudInfo
    dotenv_keys: tuple[str, ...] = field(default=())


def format_tf_var(value: object) -> str:
    """Render *value* the way Terraform expects a ``TF_VAR_*`` string.

    Examples
    --------
    >>> [format_tf_var(v) for v in ("a", None, True, 3)]
    ['a', '', 'true', '3']
    >>> format_tf_var({"env": "prod", "zones": ["a", "b"]})
    '{"env":"prod","zones":["a","b"]}'
    """
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def to_tf_vars(values: cabc.Mapping[str, object]) -> dict[str, str]:
    """Prefix every key with ``TF_VAR_`` and format its value.

    Examples
    --------
    >>> to_tf_vars({"count": 5})
    {'TF_VAR_count': '5'}
    """
    return {
        f"{TF_VAR_PREFIX}{key}": format_tf_var(value) for key, value in values.items()
    }


def load_env_file(overlay: EnvironmentOverlay, working_dir: Path) -> dict[str, str]:
    """Fill unset keys from ``<working_dir>/.env``.

    Values already present in the environment always win. Entries without a
    value are ignored.

    Returns
    -------
    dict[str, str]
        The entries that were actually written.
    """
    path = working_dir / ".env"
    if not path.is_file():
        return {}
    try:
        values = dotenv_values(path)
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    loaded = overlay.setdefaults(
        {key: value for key, value in values.items() if value is not None}
    )
    if loaded:
        logger.debug("Loaded %d variables from %s", len(loaded), path)
    return loaded


def setup_vcs(overlay: EnvironmentOverlay, vcs: VcsInfo) -> None:
    """Export git metadata plus GitHub- and GitLab-style CI variables."""
    short_sha = vcs.short_sha or (vcs.commit_sha[:7] if vcs.commit_sha else None)
    exports: dict[str, str | None] = {
        "GIT_BRANCH": vcs.branch,
        "GIT_TAG": vcs.tag,
        "GIT_COMMIT_SHA": vcs.commit_sha,
        "GIT_SHORT_SHA": short_sha,
    }
    if vcs.github_repository:
        ref = None
        if vcs.tag:
            ref = f"refs/tags/{vcs.tag}"
        elif vcs.branch:
            ref = f"refs/heads/{vcs.branch}"
        exports |= {
            "GITHUB_REPOSITORY": vcs.github_repository,
            "GITHUB_REF": ref,
            "GITHUB_SHA": vcs.commit_sha,
        }
    if vcs.gitlab_project_path:
        exports |= {
            "GITLAB_PROJECT_PATH": vcs.gitlab_project_path,
            "CI_PROJECT_PATH": vcs.gitlab_project_path,
            "CI_COMMIT_REF_NAME": vcs.tag or vcs.branch,
            "CI_COMMIT_SHA": vcs.commit_sha,
            "CI_COMMIT_SHORT_SHA": short_sha,
        }
    overlay.setdefaults({key: value for key, value in exports.items() if value})


def setup_cloud(overlay: EnvironmentOverlay, cloud: CloudInfo) -> None:
    if cloud.provider == "aws" and cloud.aws_region:
        overlay.setdefault("AWS_REGION", cloud.aws_region)
        overlay.setdefault("AWS_DEFAULT_REGION", cloud.aws_region)


def setup_terraform_variables(
    overlay: EnvironmentOverlay, variables: cabc.Mapping[str, object] | None
) -> dict[str, str]:
    """Export ``variables`` as ``TF_VAR_*`` without overwriting existing keys."""
    if not variables:
        return {}
    return overlay.setdefaults(to_tf_vars(variables))


def setup_terraform_logging(
    overlay: EnvironmentOverlay, logging_config: LoggingConfig | None
) -> None:
    """Apply the ``TF_LOG`` rules.

    An explicit ``terraform_log_level`` is exported; ``terraform_log: true``
    falls back to ``INFO``; an explicit ``terraform_log: false`` without a
    level removes ``TF_LOG``. An existing ``TF_LOG`` is never overwritten.

    Examples
    --------
    >>> overlay = EnvironmentOverlay({"TF_LOG": "DEBUG"})
    >>> setup_terraform_logging(overlay, LoggingConfig(terraform_log=False))
    >>> "TF_LOG" in overlay
    False
    """
    if logging_config is None:
        return
    if logging_config.terraform_log_level:
        overlay.setdefault("TF_LOG", logging_config.terraform_log_level)
    elif logging_config.terraform_log is True:
        overlay.setdefault("TF_LOG", DEFAULT_TF_LOG)
    elif logging_config.terraform_log is False:
        overlay.remove("TF_LOG")


def resolve_template_vars(
    config: TerraflowConfig, context: ExecutionContext
) -> TerraflowConfig:
    """Return *config* with ``${VAR}`` placeholders resolved from the context."""
    resolved = cast(
        dict[str, Any], resolve_object(config.to_mapping(), context.template_vars)
    )
    return TerraflowConfig.from_mapping(resolved)


def setup_environment(
    config: TerraflowConfig,
    context: ExecutionContext,
    overlay: EnvironmentOverlay,
) -> EnvironmentSetupResult:
    """Run the SETUP_ENVIRONMENT stage against *overlay*.

    Parameters
    ----------
    config
        Resolved configuration.
    context
        Execution context built for this run.
    overlay
        Environment overlay threaded through the orchestrator.

    Returns
    -------
    EnvironmentSetupResult
        Template-resolved configuration and the cloud identity in effect.
    """
    loaded = load_env_file(overlay, context.working_dir)
    # A .env file may carry cloud credentials the first probe could not see.
    cloud = detect_cloud(overlay.as_environ()) if loaded else context.cloud
    setup_cloud(overlay, cloud)
    setup_vcs(overlay, context.vcs)
    resolved = resolve_template_vars(config, context)
    setup_terraform_variables(overlay, resolved.variables)
    setup_terraform_logging(overlay, resolved.logging)
    return EnvironmentSetupResult(
        config=resolved, cloud=cloud, dotenv_keys=tuple(loaded)
    )
