"""Unit tests for the validation engine."""

from __future__ import annotations

from pathlib import Path

import pytest

from terraflow._config_models import (
    BackendConfig,
    SecretsConfig,
    TerraflowConfig,
    ValidationRules,
)
from terraflow._terraflow_errors import ValidationError
from terraflow._terraflow_models import CloudInfo, ExecutionContext, VcsInfo
from terraflow._validation import (
    GIT_REPO_WARNING,
    command_tier,
    format_errors,
    validate,
)

LOCAL = TerraflowConfig(backend=BackendConfig(type="local"))


@pytest.fixture
def terraform_installed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "terraflow._validation.shutil.which", lambda name: f"/usr/bin/{name}"
    )


@pytest.fixture
def terraform_missing(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("terraflow._validation.shutil.which", lambda name: None)


def _context(tmp_path: Path, **overrides: object) -> ExecutionContext:
    defaults: dict[str, object] = {
        "workspace": "main",
        "working_dir": tmp_path,
        "cloud": CloudInfo(),
        "vcs": VcsInfo(branch="main", is_clean=True),
        "hostname": "host",
    }
    defaults.update(overrides)
    return ExecutionContext(**defaults)  # type: ignore[arg-type]


@pytest.mark.parametrize(
    ("command", "tier"),
    [
        ("apply", "full"),
        ("destroy", "full"),
        ("import", "full"),
        ("refresh", "full"),
        ("plan", "backend"),
        ("state", "backend"),
        ("workspace", "backend"),
        ("output", "backend"),
        ("show", "backend"),
        ("fmt", "minimal"),
        ("validate", "minimal"),
        ("version", "minimal"),
        ("providers", "minimal"),
        ("console", "none"),
    ],
)
def test_command_tiers(command: str, tier: str) -> None:
    assert command_tier(command) == tier


@pytest.mark.usefixtures("terraform_installed")
def test_clean_local_plan_passes_with_git_warning(tmp_path: Path) -> None:
    result = validate("plan", LOCAL, _context(tmp_path))
    assert result.passed
    assert result.errors == ()
    assert result.warnings == (GIT_REPO_WARNING,), "Missing .git should only warn"


@pytest.mark.usefixtures("terraform_installed")
def test_git_repository_suppresses_warning(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    working_dir = tmp_path / "terraform"
    working_dir.mkdir()
    result = validate("plan", LOCAL, _context(tmp_path, working_dir=working_dir))
    assert result.warnings == ()


@pytest.mark.usefixtures("terraform_missing")
def test_missing_terraform_raises_in_normal_mode(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="Terraform is not installed"):
        validate("version", LOCAL, _context(tmp_path))


@pytest.mark.usefixtures("terraform_installed")
def test_invalid_workspace_name_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match='Invalid workspace name "bad name"'):
        validate("plan", LOCAL, _context(tmp_path, workspace="bad name"))


@pytest.mark.usefixtures("terraform_installed")
def test_minimal_tier_skips_workspace_check(tmp_path: Path) -> None:
    result = validate("fmt", LOCAL, _context(tmp_path, workspace="bad name"))
    assert result.passed


@pytest.mark.usefixtures("terraform_installed")
def test_dirty_tree_blocks_apply(tmp_path: Path) -> None:
    context = _context(tmp_path, vcs=VcsInfo(branch="main", is_clean=False))
    with pytest.raises(ValidationError) as excinfo:
        validate("apply", LOCAL, context)
    message = str(excinfo.value)
    assert message.startswith("Validation failed:\n  - Git working directory")
    assert "--skip-commit-check" in message


@pytest.mark.usefixtures("terraform_installed")
def test_dirty_tree_allowed_when_skipped(tmp_path: Path) -> None:
    context = _context(tmp_path, vcs=VcsInfo(branch="main", is_clean=False))
    assert validate("apply", LOCAL, context, skip_commit_check=True).passed
    skip_in_config = TerraflowConfig(
        backend=BackendConfig(type="local"), skip_commit_check=True
    )
    assert validate("apply", skip_in_config, context).passed
    not_required = TerraflowConfig(
        backend=BackendConfig(type="local"),
        validations=ValidationRules(require_git_commit=False),
    )
    assert validate("apply", not_required, context).passed


@pytest.mark.usefixtures("terraform_installed")
def test_dirty_tree_does_not_block_plan(tmp_path: Path) -> None:
    context = _context(tmp_path, vcs=VcsInfo(branch="main", is_clean=False))
    assert validate("plan", LOCAL, context).passed


@pytest.mark.usefixtures("terraform_installed")
def test_allowed_workspaces(tmp_path: Path) -> None:
    config = TerraflowConfig(
        backend=BackendConfig(type="local"),
        validations=ValidationRules(allowed_workspaces=("dev", "prod")),
    )
    with pytest.raises(ValidationError, match="Allowed workspaces: dev, prod"):
        validate("apply", config, _context(tmp_path, workspace="main"))
    assert validate("apply", config, _context(tmp_path, workspace="prod")).passed


@pytest.mark.usefixtures("terraform_installed")
@pytest.mark.parametrize("command", ["plan", "apply"])
def test_remote_backend_without_credentials_only_warns(
    tmp_path: Path, command: str
) -> None:
    (tmp_path / ".git").mkdir()
    config = TerraflowConfig(
        backend=BackendConfig(type="s3", config={"bucket": "b", "key": "k"})
    )

    result = validate(command, config, _context(tmp_path), env={})

    assert result.passed, "Shared profiles may still supply credentials"
    assert len(result.warnings) == 1
    assert "requires AWS credentials" in result.warnings[0]


@pytest.mark.usefixtures("terraform_installed")
@pytest.mark.parametrize(
    ("context_cloud", "env", "settings"),
    [
        (CloudInfo(provider="aws"), {}, {"bucket": "b", "key": "k"}),
        (CloudInfo(), {"AWS_PROFILE": "dev"}, {"bucket": "b", "key": "k"}),
        (CloudInfo(), {}, {"bucket": "b", "key": "k", "profile": "dev"}),
    ],
)
def test_remote_backend_credentials_sources(
    tmp_path: Path,
    context_cloud: CloudInfo,
    env: dict[str, str],
    settings: dict[str, str],
) -> None:
    config = TerraflowConfig(backend=BackendConfig(type="s3", config=settings))
    result = validate("plan", config, _context(tmp_path, cloud=context_cloud), env=env)
    assert result.passed


@pytest.mark.usefixtures("terraform_installed")
def test_full_tier_runs_plugin_validation(tmp_path: Path) -> None:
    config = TerraflowConfig(
        backend=BackendConfig(type="gcs", config={"prefix": "p"}),
        skip_commit_check=True,
    )
    context = _context(tmp_path, cloud=CloudInfo(provider="gcp"))
    with pytest.raises(ValidationError, match='GCS backend requires "bucket"'):
        validate("apply", config, context)


@pytest.mark.usefixtures("terraform_installed")
def test_full_tier_reports_unknown_plugin(tmp_path: Path) -> None:
    config = TerraflowConfig(
        backend=BackendConfig(type="local"), secrets=SecretsConfig(provider="vault")
    )
    with pytest.raises(ValidationError, match='Secrets plugin "vault" not found'):
        validate("apply", config, _context(tmp_path))


@pytest.mark.usefixtures("terraform_missing")
def test_dry_run_accumulates_every_failure(tmp_path: Path) -> None:
    config = TerraflowConfig(
        backend=BackendConfig(type="local"),
        validations=ValidationRules(allowed_workspaces=("prod",)),
    )
    context = _context(
        tmp_path, workspace="main", vcs=VcsInfo(branch="main", is_clean=False)
    )

    result = validate("apply", config, context, dry_run=True)

    assert not result.passed
    assert len(result.errors) == 3, result.errors
    assert result.errors[0].startswith("Terraform is not installed")
    assert result.errors[1].startswith("Git working directory")
    assert result.errors[2].startswith('Workspace "main" is not in the allowed list')
    assert result.warnings == (GIT_REPO_WARNING,)


def test_format_errors() -> None:
    assert format_errors(["a", "b"]) == "Validation failed:\n  - a\n  - b"
