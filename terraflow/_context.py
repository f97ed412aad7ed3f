"""Execution context construction and workspace derivation.

The workspace name comes from the first hit of a strategy chain: the
configured workspace, ``TERRAFLOW_WORKSPACE``, then the configured order of
``tag``, ``branch`` and ``hostname``. Every candidate is sanitized to
``^[a-zA-Z0-9_-]+$``.

Examples
--------
>>> sanitize_workspace_name("refs/tags/v1.0.0")
'v1-0-0'
>>> is_ephemeral_branch("feature/new-vpc")
True
"""

from __future__ import annotations

import logging
import os
import re
import socket
from collections import abc as cabc
from pathlib import Path

from terraflow._cloud import detect_cloud
from terraflow._config_models import WORKSPACE_STRATEGIES, TerraflowConfig
from terraflow._config_resolution import get_working_dir
from terraflow._git import inspect_vcs
from terraflow._terraflow_models import CloudInfo, ExecutionContext, VcsInfo

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE = "default"

_REF_PREFIX = re.compile(r"^refs/(?:heads|tags)/")
_SEPARATORS = re.compile(r"[/\s.]")
_INVALID = re.compile(r"[^a-zA-Z0-9_-]")
_EPHEMERAL_BRANCH = re.compile(r"^[^/]+/")


def sanitize_workspace_name(name: str) -> str:
    """Normalise *name* into a valid Terraform workspace name.

    Parameters
    ----------
    name
        Raw candidate such as a branch, tag or hostname.

    Returns
    -------
    str
        A string matching ``^[a-zA-Z0-9_-]+$``, or ``default`` when nothing
        survives sanitization.

    Examples
    --------
    >>> sanitize_workspace_name("workspace@123!")
    'workspace123'
    >>> sanitize_workspace_name("---")
    'default'
    """
    value = _REF_PREFIX.sub("", name)
    value = _SEPARATORS.sub("-", value)
    value = _INVALID.sub("", value)
    value = value.strip("-")
    return value or DEFAULT_WORKSPACE


def is_ephemeral_branch(branch: str) -> bool:
    """Return whether *branch* carries a ``prefix/`` such as ``feature/x``.

    Examples
    --------
    >>> is_ephemeral_branch("main")
    False
    """
    return _EPHEMERAL_BRANCH.match(branch) is not None


def derive_workspace(
    config: TerraflowConfig,
    vcs: VcsInfo,
    hostname: str,
    env: cabc.Mapping[str, str],
) -> str:
    """Walk the workspace strategy chain and return the first hit.

    Examples
    --------
    >>> derive_workspace(
    ...     TerraflowConfig(workspace_strategy=("hostname",)),
    ...     VcsInfo(tag="v1", branch="main"),
    ...     "build-01",
    ...     {},
    ... )
    'build-01'
    """
    if config.workspace:
        return sanitize_workspace_name(config.workspace)
    if env_workspace := env.get("TERRAFLOW_WORKSPACE"):
        return sanitize_workspace_name(env_workspace)

    for strategy in config.workspace_strategy or WORKSPACE_STRATEGIES:
        if strategy == "tag" and vcs.tag:
            return sanitize_workspace_name(vcs.tag)
        if strategy == "branch" and vcs.branch:
            if is_ephemeral_branch(vcs.branch):
                logger.debug("Skipping ephemeral branch %s", vcs.branch)
                continue
            return sanitize_workspace_name(vcs.branch)
        if strategy == "hostname" and hostname:
            return sanitize_workspace_name(hostname)
    return DEFAULT_WORKSPACE


def build_template_vars(
    workspace: str,
    hostname: str,
    cloud: CloudInfo,
    vcs: VcsInfo,
    env: cabc.Mapping[str, str],
) -> dict[str, str]:
    """Flatten the context into the ``${VAR}`` substitution map.

    Branch and tag values are kept unsanitized.

    Examples
    --------
    >>> build_template_vars("main", "host", CloudInfo(), VcsInfo(), {})
    {'HOSTNAME': 'host', 'WORKSPACE': 'main'}
    """
    variables = {"HOSTNAME": hostname, "WORKSPACE": workspace, **env}

    optional = {
        "AWS_ACCOUNT_ID": cloud.aws_account_id,
        "AWS_REGION": cloud.aws_region,
        "AZURE_SUBSCRIPTION_ID": cloud.azure_subscription_id,
        "GCP_PROJECT_ID": cloud.gcp_project_id,
        "GIT_BRANCH": vcs.branch,
        "GIT_TAG": vcs.tag,
        "GIT_COMMIT_SHA": vcs.commit_sha,
        "GIT_SHORT_SHA": vcs.short_sha
        or (vcs.commit_sha[:7] if vcs.commit_sha else None),
        "GITHUB_REPOSITORY": vcs.github_repository,
        "GITLAB_PROJECT_PATH": vcs.gitlab_project_path,
    }
    variables.update({key: value for key, value in optional.items() if value})
    return variables


def build_context(
    config: TerraflowConfig,
    cwd: Path,
    env: cabc.Mapping[str, str] | None = None,
) -> ExecutionContext:
    """Assemble the immutable per-run :class:`ExecutionContext`.

    Parameters
    ----------
    config
        Resolved configuration.
    cwd
        Directory terraflow was invoked from; git is probed here.
    env
        Environment snapshot; defaults to ``os.environ``.

    Returns
    -------
    ExecutionContext
        Context whose cloud and VCS fields are best-effort.
    """
    environ = dict(os.environ if env is None else env)
    hostname = socket.gethostname()
    vcs = inspect_vcs(cwd)
    cloud = detect_cloud(environ)
    workspace = derive_workspace(config, vcs, hostname, environ)
    logger.debug("Resolved workspace %s", workspace)
    return ExecutionContext(
        workspace=workspace,
        working_dir=get_working_dir(config, cwd),
        cloud=cloud,
        vcs=vcs,
        hostname=hostname,
        env=environ,
        template_vars=build_template_vars(workspace, hostname, cloud, vcs, environ),
    )
