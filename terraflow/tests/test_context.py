"""Unit tests for workspace derivation and context construction."""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from terraflow._config_models import TerraflowConfig
from terraflow._context import (
    build_context,
    build_template_vars,
    derive_workspace,
    is_ephemeral_branch,
    sanitize_workspace_name,
)
from terraflow._templates import resolve, resolve_object
from terraflow._terraflow_models import CloudInfo, VcsInfo

VALID = re.compile(r"^[a-zA-Z0-9_-]+$")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("main", "main"),
        ("refs/heads/main", "main"),
        ("refs/tags/v1.2.3", "v1-2-3"),
        ("feature/new vpc", "feature-new-vpc"),
        ("workspace@123!", "workspace123"),
        ("--edge--", "edge"),
        ("", "default"),
        ("!!!", "default"),
        ("host.example.com", "host-example-com"),
    ],
)
def test_sanitize_workspace_name(raw: str, expected: str) -> None:
    assert sanitize_workspace_name(raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["refs/heads/a/b", " spaced out ", "ünïcødé", "a..b", "-/-", "x\ty", "v1.0"],
)
def test_sanitize_is_idempotent_and_valid(raw: str) -> None:
    once = sanitize_workspace_name(raw)
    assert sanitize_workspace_name(once) == once, "Sanitization should be idempotent"
    assert VALID.match(once), f"{once!r} should be a valid workspace name"


@pytest.mark.parametrize("branch", ["feature/x", "bugfix/y", "release/1.0", "alice/z"])
def test_ephemeral_branches_fall_through_to_hostname(branch: str) -> None:
    assert is_ephemeral_branch(branch)
    workspace = derive_workspace(
        TerraflowConfig(), VcsInfo(branch=branch), "build-host", {}
    )
    assert workspace == "build-host"


@pytest.mark.parametrize("branch", ["main", "master", "develop"])
def test_stable_branches_are_used_directly(branch: str) -> None:
    assert not is_ephemeral_branch(branch)
    workspace = derive_workspace(
        TerraflowConfig(), VcsInfo(branch=branch), "build-host", {}
    )
    assert workspace == branch


def test_strategy_override_uses_hostname_only() -> None:
    workspace = derive_workspace(
        TerraflowConfig(workspace_strategy=("hostname",)),
        VcsInfo(tag="v1.0.0", branch="main"),
        "runner-7",
        {},
    )
    assert workspace == "runner-7", "Tag and branch should be ignored"


def test_tag_wins_over_branch_by_default() -> None:
    workspace = derive_workspace(
        TerraflowConfig(), VcsInfo(tag="v2.0", branch="main"), "host", {}
    )
    assert workspace == "v2-0"


def test_configured_and_env_workspace_precede_strategies() -> None:
    vcs = VcsInfo(tag="v1", branch="main")
    config = TerraflowConfig(workspace="Prod Env", workspace_strategy=("hostname",))
    assert derive_workspace(config, vcs, "host", {}) == "Prod-Env"
    assert (
        derive_workspace(
            TerraflowConfig(workspace_strategy=("hostname",)),
            vcs,
            "host",
            {"TERRAFLOW_WORKSPACE": "staging"},
        )
        == "staging"
    )


def test_no_strategy_hit_falls_back_to_default() -> None:
    config = TerraflowConfig(workspace_strategy=("tag", "branch"))
    vcs = VcsInfo(branch="feature/x")
    assert derive_workspace(config, vcs, "host", {}) == "default"


def test_template_vars_keep_unsanitized_vcs_values() -> None:
    variables = build_template_vars(
        "v1-0",
        "host",
        CloudInfo(provider="aws", aws_region="eu-west-1", aws_account_id="123"),
        VcsInfo(tag="v1.0", branch="feature/x", commit_sha="0123456789abcdef"),
        {"CUSTOM": "value"},
    )
    assert variables["WORKSPACE"] == "v1-0"
    assert variables["GIT_TAG"] == "v1.0", "Tag should stay unsanitized"
    assert variables["GIT_BRANCH"] == "feature/x"
    assert variables["GIT_SHORT_SHA"] == "0123456"
    assert variables["AWS_REGION"] == "eu-west-1"
    assert variables["AWS_ACCOUNT_ID"] == "123"
    assert variables["CUSTOM"] == "value"
    assert "GCP_PROJECT_ID" not in variables


def test_build_context_assembles_snapshot(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    monkeypatch.setattr("terraflow._context.socket.gethostname", lambda: "ci.local")
    monkeypatch.setattr(
        "terraflow._context.inspect_vcs",
        lambda cwd: VcsInfo(branch="main", commit_sha="abcdef0123"),
    )
    monkeypatch.setattr(
        "terraflow._context.detect_cloud", lambda env: CloudInfo(provider="none")
    )

    context = build_context(TerraflowConfig(working_dir="infra"), tmp_path, {"A": "1"})

    assert context.workspace == "main"
    assert context.working_dir == tmp_path / "infra"
    assert context.hostname == "ci.local"
    assert context.template_vars["HOSTNAME"] == "ci.local"
    assert context.template_vars["A"] == "1"
    with pytest.raises(TypeError):
        context.env["A"] = "2"  # type: ignore[index]


def test_resolve_leaves_unknown_placeholders() -> None:
    assert resolve("${A}-${B}", {"A": "x"}) == "x-${B}"
    assert resolve("${ A }", {"A": "x"}) == "x"
    assert resolve(None, {"A": "x"}) is None


def test_resolve_object_walks_nested_structures() -> None:
    value = {"bucket": "${AWS_REGION}-state", "tags": ["${WORKSPACE}", 3], "on": True}
    resolved = resolve_object(value, {"AWS_REGION": "us-east-1", "WORKSPACE": "dev"})
    assert resolved == {"bucket": "us-east-1-state", "tags": ["dev", 3], "on": True}
    assert value["bucket"] == "${AWS_REGION}-state", "Input should not be mutated"
