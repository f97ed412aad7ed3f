"""Terraform subprocess helpers used by the orchestrator."""

from __future__ import annotations

import logging
import os
import subprocess
from collections import abc as cabc
from pathlib import Path

from terraflow._terraflow_errors import ProvisionerCommandError
from terraflow._terraflow_models import ProvisionerResult

logger = logging.getLogger(__name__)

TERRAFORM_BINARY = "terraform"


def _validate_command_args(args: list[str]) -> None:
    """Validate Terraform CLI arguments for safe execution."""
    for arg in args:
        if not isinstance(arg, str):
            msg = f"Terraform argument must be a string, got {type(arg).__name__}"
            raise TypeError(msg)
        if any(char in arg for char in ("\x00", "\n", "\r")):
            msg = "Terraform argument contains an invalid control character"
            raise ValueError(msg)


def run_terraform(
    args: list[str],
    cwd: Path,
    env: cabc.Mapping[str, str] | None = None,
    *,
    capture_output: bool = False,
) -> ProvisionerResult:
    """Execute a Terraform command and return the result.

    Parameters
    ----------
    args
        Command arguments (without the ``terraform`` prefix).
    cwd
        Working directory for the command.
    env
        Complete environment for the child process; the current process
        environment when omitted.
    capture_output
        Whether to capture stdout and stderr instead of inheriting stdio.

    Returns
    -------
    ProvisionerResult
        Result containing success status, output, and return code.
    """
    cmd = [TERRAFORM_BINARY, *args]
    _validate_command_args(cmd)
    logger.debug("Executing: %s in %s", " ".join(cmd), cwd)
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            env=dict(os.environ if env is None else env),
            capture_output=capture_output,
            text=True,
            check=False,
        )
    except OSError as exc:
        msg = f"Failed to execute {TERRAFORM_BINARY}: {exc}"
        raise ProvisionerCommandError(msg, cmd, 127) from exc

    return ProvisionerResult(
        success=result.returncode == 0,
        stdout=result.stdout if capture_output else "",
        stderr=result.stderr if capture_output else "",
        return_code=result.returncode,
    )


def _raise_on_failure(result: ProvisionerResult, args: list[str], what: str) -> None:
    if result.success:
        return
    detail = f": {result.stderr.strip()}" if result.stderr.strip() else ""
    msg = f"{what} failed with exit code {result.return_code}{detail}"
    raise ProvisionerCommandError(msg, [TERRAFORM_BINARY, *args], result.return_code)


def init_command(backend_type: str, init_args: cabc.Sequence[str]) -> list[str]:
    """Return the ``terraform init`` arguments for *backend_type*.

    The local backend never receives ``-backend-config`` arguments.

    Examples
    --------
    >>> init_command("local", ["-backend-config=bucket=b"])
    ['init']
    >>> init_command("gcs", ["-backend-config=bucket=b"])
    ['init', '-backend-config=bucket=b']
    """
    if backend_type == "local":
        return ["init"]
    return ["init", *init_args]


def terraform_init(
    cwd: Path,
    backend_type: str,
    init_args: cabc.Sequence[str],
    env: cabc.Mapping[str, str] | None = None,
) -> ProvisionerResult:
    """Run ``terraform init`` with the backend's arguments.

    Raises
    ------
    ProvisionerCommandError
        When Terraform exits with a non-zero status.
    """
    args = init_command(backend_type, init_args)
    result = run_terraform(args, cwd, env)
    _raise_on_failure(result, args, "terraform init")
    return result


def select_or_create_workspace(
    cwd: Path,
    workspace: str,
    env: cabc.Mapping[str, str] | None = None,
) -> ProvisionerResult:
    """Select *workspace*, creating it when selection fails.

    Any failure of ``workspace select`` falls through to ``workspace new``;
    only a failure of the latter is raised.
    """
    selected = run_terraform(
        ["workspace", "select", workspace], cwd, env, capture_output=True
    )
    if selected.success:
        logger.debug("Workspace %s selected", workspace)
        return selected

    logger.debug(
        "Selecting workspace %s failed (%s); creating it",
        workspace,
        selected.stderr.strip() or selected.return_code,
    )
    args = ["workspace", "new", workspace]
    created = run_terraform(args, cwd, env)
    _raise_on_failure(created, args, f"Creating workspace {workspace}")
    logger.info("Workspace %s created and selected", workspace)
    return created


def run_command_passthrough(
    cwd: Path,
    command: str,
    args: cabc.Sequence[str],
    env: cabc.Mapping[str, str] | None = None,
) -> ProvisionerResult:
    """Run ``terraform <command> <args...>`` with inherited stdio."""
    full_args = [command, *args]
    result = run_terraform(full_args, cwd, env)
    _raise_on_failure(result, full_args, f"terraform {command}")
    return result
