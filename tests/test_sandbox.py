import pytest
from pathlib import Path

from sandbox_provisioner.builds.sandbox import (
    add_layer_bin_path,
    cleanup_build_sandbox,
    create_build_sandbox,
)
from sandbox_provisioner.steps.commands import run_command
from sandbox_provisioner.types import BuildSandbox


def test_sandbox_layout(sandbox: BuildSandbox):
    """Test sandbox directories and environment"""
    assert sandbox.layer_dir.exists()
    assert sandbox.tmp_dir.exists()
    assert sandbox.home_dir == sandbox.layer_dir / "root"

    assert sandbox.env_vars["TMPDIR"] == str(sandbox.tmp_dir)
    assert sandbox.env_vars["HOME"] == str(sandbox.home_dir)
    assert sandbox.env_vars["LANG"] == "C.UTF-8"


def test_layer_path(sandbox: BuildSandbox):
    """Test image paths map into the layer directory"""
    assert sandbox.layer_path("/opt/maven") == sandbox.layer_dir / "opt" / "maven"
    assert sandbox.layer_path("opt/maven") == sandbox.layer_dir / "opt" / "maven"


def test_add_layer_bin_path(sandbox: BuildSandbox):
    """Test tool bin dirs are prepended once"""
    original_path = sandbox.env_vars["PATH"]

    add_layer_bin_path(sandbox, "/opt/java/openjdk")
    add_layer_bin_path(sandbox, "/opt/java/openjdk")

    bin_dir = str(sandbox.layer_dir / "opt" / "java" / "openjdk" / "bin")
    assert sandbox.env_vars["PATH"] == f"{bin_dir}:{original_path}"


def test_temporary_sandbox_cleanup():
    """Test a sandbox without a root is removed on cleanup"""
    sandbox = create_build_sandbox("test-")
    root = sandbox.root
    assert root.exists()

    cleanup_build_sandbox(sandbox)
    assert not root.exists()


def test_rooted_sandbox_survives_cleanup(tmp_path: Path):
    """Test a caller-provided root is kept"""
    sandbox = create_build_sandbox("test-", tmp_path / "kept")
    cleanup_build_sandbox(sandbox)
    assert sandbox.layer_dir.exists()


@pytest.mark.asyncio
async def test_command_runs_with_sandbox_env(sandbox: BuildSandbox):
    """Test commands see the sandbox HOME and TMPDIR"""
    returncode, stdout, _ = await run_command("env", sandbox.layer_dir, sandbox.env_vars)
    env_vars = dict(line.split("=", 1) for line in stdout.decode().splitlines() if "=" in line)

    assert returncode == 0
    assert env_vars["HOME"] == str(sandbox.home_dir)
    assert env_vars["TMPDIR"] == str(sandbox.tmp_dir)


@pytest.mark.asyncio
async def test_command_failure_returncode(sandbox: BuildSandbox):
    returncode, _, stderr = await run_command("echo nope >&2; exit 3", sandbox.layer_dir, sandbox.env_vars)
    assert returncode == 3
    assert stderr.decode().strip() == "nope"
