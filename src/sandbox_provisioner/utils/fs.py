import hashlib
import shutil
from pathlib import Path

from sandbox_provisioner.logging import get_logger

logger = get_logger(__name__)


def compute_file_hash(path: Path) -> str:
    """Compute SHA-256 hash of a file."""

    sha256_hash = hashlib.sha256()
    with open(path, "rb") as f:
        for byte_block in iter(lambda: f.read(4096), b""):
            sha256_hash.update(byte_block)
    return sha256_hash.hexdigest()


def strip_single_root(extracted: Path) -> Path:
    """Return the lone top-level directory of an extracted archive, if any."""

    children = list(extracted.iterdir())
    if len(children) == 1 and children[0].is_dir() and not children[0].is_symlink():
        return children[0]
    return extracted


def copy_tree(src: Path, dst: Path) -> Path:
    """Copy a directory tree into place, merging with existing content."""

    dst.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
    logger.debug("tree_copied", source=str(src), destination=str(dst))
    return dst


def remove_tree(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.exists():
        shutil.rmtree(path, ignore_errors=True)
