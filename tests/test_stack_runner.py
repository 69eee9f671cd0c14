"""Tests for the external stack command runner."""

import shlex
import sys

import pytest

from tenantbase.exceptions import StackCommandError
from tenantbase.services.stack_runner import StackRunner


def python_command(code):
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


@pytest.fixture
def make_runner(test_settings):
    def _make(**overrides):
        settings = test_settings.model_copy(update=overrides)
        return StackRunner(settings)

    return _make


@pytest.mark.asyncio
async def test_start_runs_in_project_directory(make_runner, test_settings):
    runner = make_runner(stack_start_command=python_command("import os; print(os.getcwd())"))

    result = await runner.start("shop")

    assert result.returncode == 0
    assert result.stdout.strip().endswith("shop")
    assert runner.project_path("shop").is_dir()


@pytest.mark.asyncio
async def test_nonzero_exit_raises(make_runner):
    runner = make_runner(
        stack_stop_command=python_command("import sys; sys.stderr.write('port in use'); sys.exit(3)")
    )

    with pytest.raises(StackCommandError) as exc:
        await runner.stop("shop")

    assert exc.value.status_code == 503
    assert "status 3" in exc.value.message
    assert exc.value.extra_detail == "port in use"


@pytest.mark.asyncio
async def test_missing_executable_raises(make_runner):
    runner = make_runner(stack_start_command="definitely-not-a-real-binary start")

    with pytest.raises(StackCommandError):
        await runner.start("shop")


@pytest.mark.asyncio
async def test_timeout_kills_command(make_runner):
    runner = make_runner(
        stack_start_command=python_command("import time; time.sleep(30)"),
        stack_command_timeout=0.2,
    )

    with pytest.raises(StackCommandError, match="timed out"):
        await runner.start("shop")
