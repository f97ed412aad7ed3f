"""Command-line entry point for terraflow.

Usage::

    terraflow [options] <terraform-command> [args...]
    terraflow config show
    terraflow config init [--output PATH]
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections import abc as cabc
from pathlib import Path
from typing import Annotated

import yaml
from cyclopts import App, Parameter

from terraflow._config_models import TerraflowConfig
from terraflow._config_resolution import CONFIG_FILE_NAME, CliOptions, load_config
from terraflow._config_view import mask_sensitive_values, write_config_skeleton
from terraflow._context import build_context
from terraflow._environment import EnvironmentOverlay
from terraflow._orchestrator import execute
from terraflow._terraflow_errors import ProvisionerCommandError, TerraflowError

app = App(
    name="terraflow",
    help="Run Terraform with layered configuration, credentials and workspaces.",
)
config_app = App(name="config", help="Inspect or scaffold terraflow configuration.")
app.command(config_app)
logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def configure_logging(config: TerraflowConfig) -> None:
    """Configure the root logger from ``logging.level``."""
    name = config.logging.level if config.logging else None
    level = LOG_LEVELS.get(name or "info", logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s", force=True)


def run_pipeline(
    command: str,
    args: cabc.Sequence[str],
    options: CliOptions,
    environ: cabc.Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> int:
    """Resolve configuration and context, then run the orchestrator.

    Returns
    -------
    int
        Process exit status: ``0`` on success, ``1`` when a dry run fails
        validation, or the status of a failed Terraform command.
    """
    env = dict(os.environ if environ is None else environ)
    base = cwd or Path.cwd()
    config = load_config(options, env, base)
    configure_logging(config)
    context = build_context(config, base, env)
    plan = execute(
        command,
        args,
        config,
        context,
        dry_run=options.dry_run,
        skip_commit_check=bool(options.skip_commit_check),
        overlay=EnvironmentOverlay(env),
    )
    if plan is None:
        return 0
    print(json.dumps(plan.to_mapping(), indent=2))
    if not plan.validation.passed:
        print("error: validation failed in dry-run mode", file=sys.stderr)
        return 1
    return 0


@app.default
def main(
    command: str,
    *args: Annotated[str, Parameter(allow_leading_hyphen=True)],
    config: str | None = None,
    workspace: str | None = None,
    backend: str | None = None,
    secrets: str | None = None,
    skip_commit_check: bool = False,
    working_dir: str | None = None,
    assume_role: str | None = None,
    verbose: bool = False,
    debug: bool = False,
    dry_run: bool = False,
) -> int:
    """Run a Terraform command through terraflow.

    Parameters
    ----------
    command
        Terraform subcommand, such as ``plan`` or ``apply``.
    args
        Arguments passed through to Terraform.
    config
        Path to the configuration file.
    workspace
        Workspace name, overriding derivation.
    backend
        Backend type: local, s3, azurerm or gcs.
    secrets
        Secrets provider name.
    skip_commit_check
        Allow mutating commands with uncommitted changes.
    working_dir
        Directory holding the Terraform configuration.
    assume_role
        AWS IAM role ARN to assume.
    verbose
        Log at info level.
    debug
        Log at debug level.
    dry_run
        Resolve and validate everything, print the plan, and skip Terraform.
    """
    options = CliOptions(
        config=config,
        workspace=workspace,
        backend=backend,
        secrets=secrets,
        skip_commit_check=True if skip_commit_check else None,
        working_dir=working_dir,
        assume_role=assume_role,
        verbose=verbose,
        debug=debug,
        dry_run=dry_run,
    )
    try:
        return run_pipeline(command, list(args), options)
    except ProvisionerCommandError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.return_code or 1
    except TerraflowError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


@config_app.command(name="show")
def show_config(
    config: str | None = None,
    workspace: str | None = None,
    backend: str | None = None,
    secrets: str | None = None,
    working_dir: str | None = None,
    assume_role: str | None = None,
) -> int:
    """Print the resolved configuration with sensitive values masked."""
    options = CliOptions(
        config=config,
        workspace=workspace,
        backend=backend,
        secrets=secrets,
        working_dir=working_dir,
        assume_role=assume_role,
    )
    try:
        resolved = load_config(options)
    except TerraflowError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print(render_config(resolved), end="")
    return 0


def render_config(config: TerraflowConfig) -> str:
    """Return *config* as masked YAML.

    Examples
    --------
    >>> from terraflow._config_models import BackendConfig
    >>> print(render_config(TerraflowConfig(backend=BackendConfig("local"))), end="")
    backend:
      type: local
    """
    masked = mask_sensitive_values(config.to_mapping())
    return yaml.safe_dump(masked, sort_keys=False, default_flow_style=False)


@config_app.command(name="init")
def init_config(output: Path | None = None) -> int:
    """Write a commented configuration skeleton.

    Parameters
    ----------
    output
        Destination file; defaults to ``.tfwconfig.yml`` in the current
        directory.
    """
    path = output or Path.cwd() / CONFIG_FILE_NAME
    try:
        write_config_skeleton(path)
    except TerraflowError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except OSError as exc:
        print(f"error: failed to write {path}: {exc}", file=sys.stderr)
        return 1
    print(f"Configuration skeleton created at {path}")
    return 0


def run() -> None:
    """Console script entry point."""
    raise SystemExit(app())


if __name__ == "__main__":
    run()
