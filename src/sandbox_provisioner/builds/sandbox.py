"""Build sandbox directories and command environment."""

import sys
import tempfile
from pathlib import Path
from typing import Dict, Optional

from sandbox_provisioner.logging import get_logger
from sandbox_provisioner.types import BuildSandbox

logger = get_logger(__name__)


def get_system_paths() -> str:
    """Get essential system binary paths for the current platform."""
    match sys.platform:
        case "darwin":
            return "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"
        case "linux":
            return "/usr/local/bin:/usr/bin:/bin:/usr/local/sbin:/usr/sbin:/sbin"
        case _:
            raise RuntimeError(f"Unsupported platform: {sys.platform}")


def create_build_sandbox(prefix: str, root: Optional[Path] = None) -> BuildSandbox:
    """Create the scratch directories of one build.

    With ``root`` the sandbox (and the image layer in it) outlives the build;
    otherwise it lives in a temporary directory removed by cleanup.
    """
    temp_dir = None
    if root is None:
        temp_dir = tempfile.TemporaryDirectory(prefix=prefix)
        root = Path(temp_dir.name)

    dirs: Dict[str, Path] = {
        "layer": root / "layer",
        "tmp": root / "tmp",
        "home": root / "layer" / "root",
    }
    for path in dirs.values():
        path.mkdir(parents=True, exist_ok=True)

    env_vars = {
        "PATH": get_system_paths(),
        "TMPDIR": str(dirs["tmp"]),
        "HOME": str(dirs["home"]),
        "XDG_RUNTIME_DIR": str(dirs["tmp"]),
        "LANG": "C.UTF-8",
    }

    sandbox = BuildSandbox(
        root=root,
        layer_dir=dirs["layer"],
        tmp_dir=dirs["tmp"],
        home_dir=dirs["home"],
        env_vars=env_vars,
        temp_dir=temp_dir,
    )

    logger.debug("build_sandbox_created", root=str(root), layer=str(dirs["layer"]))
    return sandbox


def add_layer_bin_path(sandbox: BuildSandbox, image_path: str) -> None:
    """Prepend an installed tool's bin directory to the sandbox PATH."""
    bin_path = sandbox.layer_path(image_path) / "bin"
    current = sandbox.env_vars["PATH"]
    if str(bin_path) not in current.split(":"):
        sandbox.env_vars["PATH"] = f"{bin_path}:{current}"
        logger.debug("updated_sandbox_path", bin_path=str(bin_path))


def cleanup_build_sandbox(sandbox: BuildSandbox) -> None:
    """Remove the sandbox unless it was created at a caller-provided root."""
    if sandbox.temp_dir is not None:
        logger.debug("cleaning_sandbox", root=str(sandbox.root))
        sandbox.temp_dir.cleanup()
