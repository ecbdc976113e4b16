"""Tests for archive download and extraction."""

import io
import tarfile
import zipfile
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from conftest import archive_bytes
from sandbox_provisioner.errors import ChecksumOrVersionMismatch, CommandFailure, TransientFailure
from sandbox_provisioner.steps.fetching import (
    archive_filename,
    archive_format,
    download_url,
    extract_archive,
)


def mock_session(status: int, chunks=(), error: Exception = None):
    """An aiohttp.ClientSession stand-in returning one response."""
    response = MagicMock()
    response.status = status
    response.content.read = AsyncMock(side_effect=[*chunks, b""])

    request = MagicMock()
    request.__aenter__ = AsyncMock(return_value=response)
    request.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    if error is not None:
        session.get = MagicMock(side_effect=error)
    else:
        session.get = MagicMock(return_value=request)

    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    return session_cm


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://nodejs.org/dist/v20.10.0/node-v20.10.0-linux-x64.tar.gz", ".tar.gz"),
        ("https://services.gradle.org/distributions/gradle-8.5-bin.zip", ".zip"),
        ("https://example.com/tool.tgz?sig=abc", ".tgz"),
        ("https://example.com/tool.tar.xz", ".tar.xz"),
        ("https://example.com/tool.rar", None),
    ],
)
def test_archive_format(url, expected):
    assert archive_format(url) == expected


def test_archive_filename():
    assert archive_filename("https://example.com/a/tool.zip?x=1") == "tool.zip"
    assert archive_filename("https://example.com/") == "download"


@pytest.mark.asyncio
async def test_download_success(tmp_path):
    dest = tmp_path / "tool.tar.gz"
    with patch("aiohttp.ClientSession", return_value=mock_session(200, [b"abc", b"def"])):
        await download_url("https://example.com/tool.tar.gz", dest)
    assert dest.read_bytes() == b"abcdef"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status,error",
    [
        (404, ChecksumOrVersionMismatch),
        (410, ChecksumOrVersionMismatch),
        (429, TransientFailure),
        (503, TransientFailure),
        (403, CommandFailure),
    ],
)
async def test_download_status_classification(tmp_path, status, error):
    """Test HTTP statuses map onto the retry taxonomy"""
    dest = tmp_path / "tool.tar.gz"
    with patch("aiohttp.ClientSession", return_value=mock_session(status)):
        with pytest.raises(error):
            await download_url("https://example.com/tool.tar.gz", dest)
    assert not dest.exists()


@pytest.mark.asyncio
async def test_download_network_error_is_transient(tmp_path):
    dest = tmp_path / "tool.tar.gz"
    session = mock_session(200, error=aiohttp.ClientConnectionError("connection reset"))
    with patch("aiohttp.ClientSession", return_value=session):
        with pytest.raises(TransientFailure, match="connection reset"):
            await download_url("https://example.com/tool.tar.gz", dest)
    assert not dest.exists()


@pytest.mark.parametrize("suffix", [".tar.gz", ".zip"])
def test_extract_archive(tmp_path, suffix):
    archive = tmp_path / f"tool{suffix}"
    archive.write_bytes(archive_bytes(suffix))

    out = extract_archive(archive, tmp_path / "out")

    tool = out / "dist" / "bin" / "tool"
    assert tool.read_bytes().startswith(b"#!/bin/sh")
    assert tool.stat().st_mode & 0o111


def test_extract_rejects_path_traversal(tmp_path):
    """Test members escaping the target directory are refused"""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        info = tarfile.TarInfo("../evil")
        info.size = 4
        tf.addfile(info, io.BytesIO(b"evil"))
    archive = tmp_path / "evil.tar.gz"
    archive.write_bytes(buf.getvalue())

    with pytest.raises(ChecksumOrVersionMismatch, match="escapes"):
        extract_archive(archive, tmp_path / "out")
    assert not (tmp_path / "evil").exists()


def test_extract_rejects_zip_traversal(tmp_path):
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("../../evil", "evil")

    with pytest.raises(ChecksumOrVersionMismatch):
        extract_archive(archive, tmp_path / "out")


@pytest.mark.parametrize("name", ["corrupt.tar.gz", "corrupt.zip"])
def test_extract_corrupt_archive(tmp_path, name):
    archive = tmp_path / name
    archive.write_bytes(b"definitely not an archive")

    with pytest.raises(ChecksumOrVersionMismatch, match="Corrupt"):
        extract_archive(archive, tmp_path / "out")
