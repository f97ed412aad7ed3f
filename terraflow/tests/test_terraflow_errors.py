"""Unit tests for the terraflow exception hierarchy."""

from __future__ import annotations

import doctest

import pytest

from terraflow import _terraflow_errors
from terraflow._terraflow_errors import (
    ConfigError,
    PluginNotFoundError,
    ProvisionerCommandError,
    TerraflowError,
)


def test_module_examples_run() -> None:
    results = doctest.testmod(_terraflow_errors)
    assert results.attempted > 0, "Examples should be collected"
    assert results.failed == 0


@pytest.mark.parametrize(
    "error",
    [
        ConfigError("bad"),
        PluginNotFoundError("backend", "s4"),
        ProvisionerCommandError("failed", ["terraform", "plan"], 1),
    ],
)
def test_errors_share_base(error: TerraflowError) -> None:
    assert isinstance(error, TerraflowError)
