"""Tests for the stage sequencing in :mod:`terraflow._orchestrator`."""

from __future__ import annotations

import logging
from collections import abc as cabc
from pathlib import Path
from typing import Any

import pytest

from terraflow._backend_state import (
    load_backend_state,
    save_backend_state,
    state_path,
)
from terraflow._config_models import (
    AssumeRoleConfig,
    AuthConfig,
    BackendConfig,
    SecretsConfig,
    TerraflowConfig,
)
from terraflow._config_resolution import CliOptions, resolve_config
from terraflow._environment import EnvironmentOverlay
from terraflow._orchestrator import execute
from terraflow._terraflow_errors import ValidationError
from terraflow._terraflow_models import (
    CloudInfo,
    ExecutionContext,
    ValidationResult,
    VcsInfo,
)

ROLE_ARN = "arn:aws:iam::123456789012:role/Deploy"


class _StubResult:
    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class _FakeRun:
    def __init__(self, *results: _StubResult) -> None:
        self.results = list(results)
        self.calls: list[tuple[list[str], dict[str, Any]]] = []

    def __call__(self, cmd: list[str], **kwargs: Any) -> _StubResult:
        self.calls.append((cmd, kwargs))
        return self.results.pop(0) if self.results else _StubResult()

    @property
    def commands(self) -> list[list[str]]:
        return [cmd for cmd, _ in self.calls]


class _FakeAuth:
    name = "fake-auth"

    def __init__(self, log: list[str]) -> None:
        self.log = log

    def validate(self, auth: AuthConfig, env: cabc.Mapping[str, str]) -> None:
        self.log.append("auth.validate")

    def authenticate(
        self, auth: AuthConfig, context: ExecutionContext, env: cabc.Mapping[str, str]
    ) -> dict[str, str]:
        self.log.append("auth.authenticate")
        return {"AWS_ACCESS_KEY_ID": "from-role"}


class _FakeSecrets:
    name = "fake-secrets"

    def __init__(self, log: list[str]) -> None:
        self.log = log
        self.seen_env: dict[str, str] = {}

    def validate(self, descriptor: SecretsConfig, env: cabc.Mapping[str, str]) -> None:
        self.log.append("secrets.validate")

    def fetch(
        self,
        descriptor: SecretsConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str],
    ) -> dict[str, str]:
        self.log.append("secrets.fetch")
        self.seen_env = dict(env)
        return {"TF_VAR_db_password": "hunter2"}


class _FakeBackend:
    name = "s3"

    def __init__(self, log: list[str]) -> None:
        self.log = log

    def validate(self, descriptor: BackendConfig, env: cabc.Mapping[str, str]) -> None:
        self.log.append("backend.validate")

    def setup(
        self,
        descriptor: BackendConfig,
        context: ExecutionContext,
        env: cabc.Mapping[str, str],
    ) -> None:
        self.log.append("backend.setup")

    def init_args(
        self, descriptor: BackendConfig, context: ExecutionContext
    ) -> list[str]:
        self.log.append("backend.init_args")
        return ["-backend-config=bucket=b"]


def _context(tmp_path: Path, **overrides: object) -> ExecutionContext:
    defaults: dict[str, object] = {
        "workspace": "main",
        "working_dir": tmp_path,
        "cloud": CloudInfo(),
        "vcs": VcsInfo(branch="main"),
        "hostname": "host",
        "env": {"PATH": "/usr/bin"},
        "template_vars": {"WORKSPACE": "main"},
    }
    defaults.update(overrides)
    return ExecutionContext(**defaults)  # type: ignore[arg-type]


@pytest.fixture
def terraform_installed(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "terraflow._validation.shutil.which", lambda name: f"/usr/bin/{name}"
    )


@pytest.fixture
def fake_run(monkeypatch: pytest.MonkeyPatch) -> _FakeRun:
    runner = _FakeRun()
    monkeypatch.setattr("terraflow._provisioner.subprocess.run", runner)
    return runner


@pytest.fixture
def stage_log(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    """Replace plugin resolution and validation with recording fakes."""
    log: list[str] = []
    secrets = _FakeSecrets(log)

    def fake_validate(
        command: str, *args: object, **kwargs: object
    ) -> ValidationResult:
        log.append("validate")
        return ValidationResult(passed=True)

    monkeypatch.setattr("terraflow._orchestrator.validate", fake_validate)
    monkeypatch.setattr(
        "terraflow._orchestrator.resolve_auth", lambda name: _FakeAuth(log)
    )
    monkeypatch.setattr("terraflow._orchestrator.resolve_secrets", lambda name: secrets)
    monkeypatch.setattr(
        "terraflow._orchestrator.resolve_backend", lambda name: _FakeBackend(log)
    )
    return log


REMOTE = TerraflowConfig(
    backend=BackendConfig(type="s3", config={"bucket": "b", "key": "k"}),
    secrets=SecretsConfig(provider="fake"),
    auth=AuthConfig(assume_role=AssumeRoleConfig(role_arn=ROLE_ARN)),
)


@pytest.mark.usefixtures("terraform_installed")
def test_dry_run_never_invokes_terraform(
    fake_run: _FakeRun, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    config = TerraflowConfig(backend=BackendConfig(type="local"))
    context = _context(tmp_path)

    plan = execute("plan", ["-out=plan.tfplan"], config, context, dry_run=True)

    assert fake_run.calls == [], "Dry run must not run terraform"
    assert plan is not None
    assert plan.workspace == "main"
    assert plan.backend_type == "local"
    assert plan.init_args == ()
    assert plan.command_line == ("terraform", "plan", "-out=plan.tfplan")
    assert plan.validation.passed
    assert not state_path(tmp_path).exists(), "Dry run must not persist state"
    assert "Dry run mode" in capsys.readouterr().out


@pytest.mark.usefixtures("terraform_installed")
def test_local_run_inits_selects_and_runs(fake_run: _FakeRun, tmp_path: Path) -> None:
    fake_run.results.extend(
        [_StubResult(), _StubResult(returncode=1, stderr="doesn't exist")]
    )
    config = TerraflowConfig(
        backend=BackendConfig(type="local"), variables={"region": "us-east-1"}
    )

    result = execute("plan", [], config, _context(tmp_path))

    assert result is None
    assert fake_run.commands == [
        ["terraform", "init"],
        ["terraform", "workspace", "select", "main"],
        ["terraform", "workspace", "new", "main"],
        ["terraform", "plan"],
    ]
    env = fake_run.calls[-1][1]["env"]
    assert env["TF_VAR_region"] == "us-east-1"
    assert env["PATH"] == "/usr/bin"
    assert state_path(tmp_path).exists(), "Backend state should be saved"


@pytest.mark.usefixtures("terraform_installed")
def test_bare_config_backend_is_not_persisted(
    fake_run: _FakeRun, tmp_path: Path
) -> None:
    execute("plan", [], TerraflowConfig(), _context(tmp_path))
    assert fake_run.commands[0] == ["terraform", "init"]
    assert not state_path(tmp_path).exists()


@pytest.mark.usefixtures("terraform_installed")
def test_resolved_default_backend_is_persisted(
    fake_run: _FakeRun, tmp_path: Path
) -> None:
    config = resolve_config(CliOptions(), {}, None)

    execute("plan", [], config, _context(tmp_path))

    assert fake_run.commands[0] == ["terraform", "init"]
    assert load_backend_state(tmp_path) == BackendConfig(type="local")


@pytest.fixture
def dotenv_credentials(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Write AWS credentials to the working directory ``.env`` file."""
    (tmp_path / ".env").write_text(
        "AWS_ACCESS_KEY_ID=AKIAEXAMPLE\n"
        "AWS_SECRET_ACCESS_KEY=secret\n"
        "AWS_REGION=eu-west-1\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(
        "terraflow._environment.detect_cloud",
        lambda env: CloudInfo(provider="aws", aws_region=env.get("AWS_REGION")),
    )
    monkeypatch.setattr(
        "terraflow._plugins_backends.run_command", lambda *args, **kwargs: ""
    )
    return tmp_path


S3_ONLY = TerraflowConfig(
    backend=BackendConfig(type="s3", config={"bucket": "prod-state", "key": "k"})
)


@pytest.mark.usefixtures("terraform_installed")
def test_dotenv_credentials_allow_remote_run(
    fake_run: _FakeRun, dotenv_credentials: Path, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.WARNING):
        execute("plan", [], S3_ONLY, _context(dotenv_credentials))

    assert fake_run.commands[-1] == ["terraform", "plan"]
    env = fake_run.calls[-1][1]["env"]
    assert env["AWS_ACCESS_KEY_ID"] == "AKIAEXAMPLE"
    assert "requires AWS credentials" in caplog.text


@pytest.mark.usefixtures("terraform_installed")
def test_dotenv_credentials_pass_dry_run_validation(
    fake_run: _FakeRun, dotenv_credentials: Path
) -> None:
    plan = execute("plan", [], S3_ONLY, _context(dotenv_credentials), dry_run=True)

    assert plan is not None
    assert plan.validation.passed, plan.validation.errors
    assert plan.backend_type == "s3"
    assert fake_run.calls == []


@pytest.mark.usefixtures("terraform_installed")
def test_validation_failure_stops_before_terraform(
    fake_run: _FakeRun, tmp_path: Path
) -> None:
    context = _context(tmp_path, vcs=VcsInfo(branch="main", is_clean=False))
    with pytest.raises(ValidationError, match="uncommitted changes"):
        execute("apply", [], TerraflowConfig(), context)
    assert fake_run.calls == []


@pytest.mark.usefixtures("terraform_installed")
def test_dry_run_reports_validation_failures(
    fake_run: _FakeRun, tmp_path: Path
) -> None:
    context = _context(tmp_path, vcs=VcsInfo(branch="main", is_clean=False))

    plan = execute("apply", [], TerraflowConfig(), context, dry_run=True)

    assert plan is not None
    assert not plan.validation.passed
    assert plan.validation.errors[0].startswith("Git working directory")
    assert fake_run.calls == []


def test_stages_run_in_order(
    stage_log: list[str], fake_run: _FakeRun, tmp_path: Path
) -> None:
    execute("apply", ["-auto-approve"], REMOTE, _context(tmp_path))

    assert stage_log == [
        "validate",
        "auth.validate",
        "auth.authenticate",
        "secrets.validate",
        "secrets.fetch",
        "backend.validate",
        "backend.setup",
        "backend.init_args",
    ]
    assert fake_run.commands[0] == ["terraform", "init", "-backend-config=bucket=b"]
    assert fake_run.commands[-1] == ["terraform", "apply", "-auto-approve"]
    env = fake_run.calls[-1][1]["env"]
    assert env["AWS_ACCESS_KEY_ID"] == "from-role"
    assert env["TF_VAR_db_password"] == "hunter2"


def test_credentials_override_and_reach_secrets(
    monkeypatch: pytest.MonkeyPatch, stage_log: list[str], tmp_path: Path
) -> None:
    secrets = _FakeSecrets(stage_log)
    monkeypatch.setattr("terraflow._orchestrator.resolve_secrets", lambda name: secrets)
    context = _context(tmp_path, env={"AWS_ACCESS_KEY_ID": "stale"})
    overlay = EnvironmentOverlay(context.env)

    execute("plan", [], REMOTE, context, dry_run=True, overlay=overlay)

    assert secrets.seen_env["AWS_ACCESS_KEY_ID"] == "from-role"
    assert overlay.get("AWS_ACCESS_KEY_ID") == "from-role"


def test_dry_run_skips_backend_setup_and_state(
    stage_log: list[str], fake_run: _FakeRun, tmp_path: Path
) -> None:
    plan = execute("plan", [], REMOTE, _context(tmp_path), dry_run=True)

    assert "backend.setup" not in stage_log
    assert "auth.authenticate" in stage_log
    assert plan is not None
    assert plan.init_args == ("-backend-config=bucket=b",)
    assert not state_path(tmp_path).exists()
    assert fake_run.calls == []


def test_backend_migration_warns(
    stage_log: list[str], tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    save_backend_state(tmp_path, BackendConfig(type="local"))
    with caplog.at_level(logging.WARNING):
        execute("plan", [], REMOTE, _context(tmp_path), dry_run=True)
    assert "Backend changed from 'local' to 's3'" in caplog.text
