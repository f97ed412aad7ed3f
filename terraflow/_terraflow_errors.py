"""Exception hierarchy for terraflow.

Every stage of the orchestrator either returns normally or raises one of these
errors, so the CLI can catch :class:`TerraflowError` and exit non-zero.

Examples
--------
>>> isinstance(ConfigError("Backend plugin 's4' not found"), TerraflowError)
True
"""

from __future__ import annotations

from collections.abc import Sequence


class TerraflowError(Exception):
    """Base error for terraflow orchestration.

    Parameters
    ----------
    message
        Human-readable error message describing the failure.
    """


class ConfigError(TerraflowError):
    """Raised when configuration is malformed or a plugin cannot be resolved.

    Examples
    --------
    >>> str(ConfigError('S3 backend requires "bucket" configuration'))
    'S3 backend requires "bucket" configuration'
    """


class PluginNotFoundError(ConfigError):
    """Raised when no capability plugin matches a kind and name.

    Examples
    --------
    >>> err = PluginNotFoundError("backend", "s4")
    >>> (err.kind, err.name)
    ('backend', 's4')
    """

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f'{kind.capitalize()} plugin "{name}" not found')
        self.kind = kind
        self.name = name


class ValidationError(TerraflowError):
    """Raised when a pre-flight validation check fails."""


class CloudCommandError(TerraflowError):
    """Raised when a cloud CLI invocation (aws, az, gcloud) fails."""


class ProvisionerCommandError(TerraflowError):
    """Raised when a Terraform invocation exits with a non-zero status.

    Parameters
    ----------
    message
        Human-readable error message describing the failure.
    argv
        Full argument vector of the failed command.
    return_code
        Exit status reported by the provisioner.

    Examples
    --------
    >>> err = ProvisionerCommandError("init failed", ["terraform", "init"], 1)
    >>> err.return_code
    1
    """

    def __init__(
        self, message: str, argv: Sequence[str], return_code: int
    ) -> None:
        super().__init__(message)
        self.argv = list(argv)
        self.return_code = return_code
