"""Archive download and extraction."""

import asyncio
import os
import tarfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import urlparse

import aiohttp

from sandbox_provisioner.errors import (
    ChecksumOrVersionMismatch,
    CommandFailure,
    TransientFailure,
)
from sandbox_provisioner.logging import get_logger

logger = get_logger(__name__)

ARCHIVE_FORMATS = (".tar.gz", ".tgz", ".tar.xz", ".zip")
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})
MISSING_STATUSES = frozenset({404, 410})


def archive_format(url: str) -> Optional[str]:
    """Archive suffix of a download URL, ignoring any query string."""
    name = PurePosixPath(urlparse(url).path).name
    for suffix in ARCHIVE_FORMATS:
        if name.endswith(suffix):
            return suffix
    return None


def archive_filename(url: str) -> str:
    return PurePosixPath(urlparse(url).path).name or "download"


async def download_url(url: str, dest: Path, timeout: float = 300.0) -> None:
    """Stream a URL to ``dest``, classifying failures for the retry policy."""
    logger.info("download_started", url=url, destination=str(dest))
    try:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url) as response:
                if response.status in MISSING_STATUSES:
                    raise ChecksumOrVersionMismatch(
                        f"Pinned artifact not available at {url} (status {response.status})",
                        details={"url": url, "status": response.status},
                    )
                if response.status in RETRYABLE_STATUSES:
                    raise TransientFailure(
                        f"Download failed with status {response.status}",
                        details={"url": url, "status": response.status},
                    )
                if response.status != 200:
                    raise CommandFailure(f"GET {url}", response.status)

                size = 0
                with open(dest, "wb") as f:
                    while chunk := await response.content.read(8192):
                        f.write(chunk)
                        size += len(chunk)

    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        if dest.exists():
            dest.unlink()
        raise TransientFailure(
            f"Failed to download {url}: {e}", details={"url": url}
        ) from e
    except BaseException:
        if dest.exists():
            dest.unlink()
        raise

    logger.info("download_complete", url=url, size=size)


def _check_member(dest_dir: Path, name: str) -> None:
    target = (dest_dir / name).resolve()
    if os.path.commonpath([target, dest_dir.resolve()]) != str(dest_dir.resolve()):
        raise ChecksumOrVersionMismatch(
            f"Archive member escapes extraction directory: {name}",
            details={"member": name},
        )


def extract_archive(archive_path: Path, dest_dir: Path, format: Optional[str] = None) -> Path:
    """Extract a zip or tarball into ``dest_dir``."""

    format = format or archive_format(archive_path.name)
    logger.debug("extract_archive", archive=str(archive_path), format=format)
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        if format == ".zip":
            with zipfile.ZipFile(archive_path) as archive:
                for name in archive.namelist():
                    _check_member(dest_dir, name)
                for info in archive.infolist():
                    extracted = Path(archive.extract(info, dest_dir))
                    # zipfile drops unix permissions, restore them from the header
                    mode = (info.external_attr >> 16) & 0o777
                    if mode and not info.is_dir():
                        extracted.chmod(mode)
        elif format in (".tar.gz", ".tgz", ".tar.xz"):
            with tarfile.open(archive_path) as archive:
                for member in archive.getmembers():
                    _check_member(dest_dir, member.name)
                    if member.islnk():
                        _check_member(dest_dir, member.linkname)
                archive.extractall(dest_dir, filter="tar")
        else:
            raise ValueError(f"Unsupported archive format: {format}")
    except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
        raise ChecksumOrVersionMismatch(
            f"Corrupt archive {archive_path.name}: {e}",
            details={"archive": archive_path.name},
        ) from e

    logger.info("archive_extracted", archive=str(archive_path), extracted_to=str(dest_dir))
    return dest_dir
