"""Runtime data models shared across terraflow stages.

These models carry the per-run context and the results of validation,
provisioner invocations and dry runs between module boundaries.

Examples
--------
>>> result = ProvisionerResult(success=True, stdout="ok", stderr="", return_code=0)
>>> result.success
True
"""

from __future__ import annotations

from collections import abc as cabc
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType


@dataclass(frozen=True, slots=True)
class CloudInfo:
    """Detected cloud identity.

    Attributes
    ----------
    provider
        One of ``aws``, ``azure``, ``gcp`` or ``none``.
    aws_account_id, aws_region
        AWS identity when the provider is ``aws``.
    azure_subscription_id, azure_tenant_id
        Azure identity when the provider is ``azure``.
    gcp_project_id
        GCP project when the provider is ``gcp``.

    Examples
    --------
    >>> CloudInfo().provider
    'none'
    """

    provider: str = "none"
    aws_account_id: str | None = None
    aws_region: str | None = None
    azure_subscription_id: str | None = None
    azure_tenant_id: str | None = None
    gcp_project_id: str | None = None


@dataclass(frozen=True, slots=True)
class VcsInfo:
    """Git metadata for the working directory; every field is best-effort."""

    branch: str | None = None
    tag: str | None = None
    commit_sha: str | None = None
    short_sha: str | None = None
    is_clean: bool = True
    github_repository: str | None = None
    gitlab_project_path: str | None = None


@dataclass(frozen=True, slots=True)
class ExecutionContext:
    """Immutable snapshot of one terraflow invocation.

    Attributes
    ----------
    workspace
        Sanitized workspace name.
    working_dir
        Absolute Terraform working directory.
    cloud
        Detected cloud identity.
    vcs
        Detected git metadata.
    hostname
        Machine hostname.
    env
        Read-only snapshot of the process environment.
    template_vars
        Read-only flat map used for ``${VAR}`` substitution.
    """

    workspace: str
    working_dir: Path
    cloud: CloudInfo
    vcs: VcsInfo
    hostname: str
    env: cabc.Mapping[str, str] = field(default_factory=dict, repr=False)
    template_vars: cabc.Mapping[str, str] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", MappingProxyType(dict(self.env)))
        object.__setattr__(
            self, "template_vars", MappingProxyType(dict(self.template_vars))
        )


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of a validation pass.

    Examples
    --------
    >>> ValidationResult(passed=False, errors=("bad",)).errors
    ('bad',)
    """

    passed: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ProvisionerResult:
    """Result of a Terraform command execution.

    Attributes
    ----------
    success
        Whether the command exited with status code ``0``.
    stdout
        Captured standard output (empty when not captured).
    stderr
        Captured standard error (empty when not captured).
    return_code
        Process exit status code returned by Terraform.
    """

    success: bool
    stdout: str
    stderr: str
    return_code: int


@dataclass(frozen=True, slots=True)
class ExecutionPlan:
    """Report emitted by a dry run instead of invoking Terraform."""

    workspace: str
    working_dir: Path
    backend_type: str
    init_args: tuple[str, ...]
    command_line: tuple[str, ...]
    validation: ValidationResult

    def to_mapping(self) -> dict[str, object]:
        """Return a JSON-serialisable mapping.

        Examples
        --------
        >>> plan = ExecutionPlan(
        ...     workspace="main",
        ...     working_dir=Path("/repo/terraform"),
        ...     backend_type="local",
        ...     init_args=(),
        ...     command_line=("terraform", "plan"),
        ...     validation=ValidationResult(passed=True),
        ... )
        >>> plan.to_mapping()["command_line"]
        'terraform plan'
        """
        return {
            "workspace": self.workspace,
            "working_dir": str(self.working_dir),
            "backend_type": self.backend_type,
            "init_args": list(self.init_args),
            "command_line": " ".join(self.command_line),
            "validation": {
                "passed": self.validation.passed,
                "errors": list(self.validation.errors),
                "warnings": list(self.validation.warnings),
            },
        }
