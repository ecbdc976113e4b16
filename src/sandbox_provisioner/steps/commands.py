"""Install and configure command execution."""

import asyncio
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple

from sandbox_provisioner.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PackageManager:
    """How one package manager installs a pinned package list"""

    name: str
    install: str
    pin: str
    env: Dict[str, str] = field(default_factory=dict, hash=False)


PACKAGE_MANAGERS: Dict[str, PackageManager] = {
    "apt": PackageManager(
        name="apt",
        install=(
            "apt-get update"
            " && apt-get install -y --no-install-recommends"
            " -o Dir::Cache::archives={cache} {packages}"
        ),
        pin="{name}={version}",
        env={"DEBIAN_FRONTEND": "noninteractive"},
    ),
    "npm": PackageManager(
        name="npm",
        install="npm install --global --prefix {dest} {packages}",
        pin="{name}@{version}",
        env={"NPM_CONFIG_CACHE": "{cache}", "NPM_CONFIG_UPDATE_NOTIFIER": "false"},
    ),
    "pip": PackageManager(
        name="pip",
        install="pip install --prefix {dest} {packages}",
        pin="{name}=={version}",
        env={"PIP_CACHE_DIR": "{cache}"},
    ),
    "uv": PackageManager(
        name="uv",
        install="uv pip install --prefix {dest} {packages}",
        pin="{name}=={version}",
        env={"UV_CACHE_DIR": "{cache}"},
    ),
}


def get_package_manager(name: str) -> PackageManager:
    try:
        return PACKAGE_MANAGERS[name]
    except KeyError:
        raise ValueError(f"Unsupported package manager: {name}") from None


def pinned_packages(manager: PackageManager, tool_name: str, version: str) -> Tuple[str, ...]:
    return (manager.pin.format(name=tool_name, version=version),)


def build_install_command(
    manager: PackageManager, packages: Sequence[str], dest: Path, cache: Path
) -> Tuple[str, Dict[str, str]]:
    """Render the install command and its extra env for a package list."""
    cmd = manager.install.format(
        dest=shlex.quote(str(dest)),
        cache=shlex.quote(str(cache)),
        packages=shlex.join(packages),
    )
    env = {k: v.format(dest=str(dest), cache=str(cache)) for k, v in manager.env.items()}
    return cmd, env


def render_script(source: str, version: str, dest: Path, cache: Path) -> str:
    # Plain replacement so shell ${VAR} syntax in scripts survives
    values = {
        "{version}": version,
        "{dest}": shlex.quote(str(dest)),
        "{cache}": shlex.quote(str(cache)),
    }
    for placeholder, value in values.items():
        source = source.replace(placeholder, value)
    return source


async def run_command(
    cmd: str, cwd: Path, env: Optional[Mapping[str, str]] = None
) -> Tuple[int, bytes, bytes]:
    """Run a shell command and return (returncode, stdout, stderr)."""

    logger.debug("command_exec", cmd=cmd, cwd=str(cwd))

    process = await asyncio.create_subprocess_shell(
        cmd,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise

    if stdout:
        logger.debug("command_stdout", cmd=cmd, output=stdout.decode(errors="replace"))
    if stderr:
        logger.debug("command_stderr", cmd=cmd, output=stderr.decode(errors="replace"))

    logger.debug("command_complete", cmd=cmd, returncode=process.returncode)

    return process.returncode, stdout, stderr
