import gzip
import io
import tarfile
import zipfile
from pathlib import Path
from typing import Dict, List, Tuple

import pytest

from sandbox_provisioner.builds.orchestrator import BuildOrchestrator
from sandbox_provisioner.builds.sandbox import create_build_sandbox
from sandbox_provisioner.caches.store import CacheStore
from sandbox_provisioner.catalog import tools
from sandbox_provisioner.config import Settings
from sandbox_provisioner.steps.executor import StepExecutor
from sandbox_provisioner.types import ImageSpec

FIXTURES = Path(__file__).parent.parent / "fixtures_data" / "specs"

TOOL_SCRIPT = b"#!/bin/sh\necho ok\n"


def archive_bytes(suffix: str, payload: bytes = TOOL_SCRIPT) -> bytes:
    """A small, reproducible archive with a single top-level ``dist`` directory."""
    buf = io.BytesIO()
    if suffix == ".zip":
        with zipfile.ZipFile(buf, "w") as zf:
            info = zipfile.ZipInfo("dist/bin/tool")
            info.external_attr = 0o755 << 16
            zf.writestr(info, payload)
        return buf.getvalue()

    with tarfile.open(fileobj=buf, mode="w") as tf:
        info = tarfile.TarInfo("dist/bin/tool")
        info.size = len(payload)
        info.mode = 0o755
        tf.addfile(info, io.BytesIO(payload))
    return gzip.compress(buf.getvalue(), mtime=0)


class FakeFetcher:
    """Writes a generated archive instead of downloading.

    ``failures`` maps a URL substring to exceptions raised, one per call,
    before the download succeeds. ``payloads`` maps a URL substring to the
    content of the archived ``bin/tool``.
    """

    def __init__(self):
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.payloads: Dict[str, bytes] = {}
        self.on_call = None

    async def __call__(self, url: str, dest: Path, timeout: float) -> None:
        self.calls.append(url)
        if self.on_call is not None:
            self.on_call(url)
        for pattern, errors in self.failures.items():
            if pattern in url and errors:
                raise errors.pop(0)
        payload = next((p for pattern, p in self.payloads.items() if pattern in url), TOOL_SCRIPT)
        suffix = ".zip" if dest.name.endswith(".zip") else ".tar.gz"
        dest.write_bytes(archive_bytes(suffix, payload))

    def count(self, pattern: str) -> int:
        return sum(1 for url in self.calls if pattern in url)


class FakeRunner:
    """Records commands; ``results`` maps a command substring to (rc, stdout, stderr)."""

    def __init__(self):
        self.calls: List[Tuple[str, Path, Dict[str, str]]] = []
        self.results: Dict[str, List[Tuple[int, bytes, bytes]]] = {}

    async def __call__(self, cmd: str, cwd: Path, env) -> Tuple[int, bytes, bytes]:
        self.calls.append((cmd, cwd, dict(env)))
        for pattern, results in self.results.items():
            if pattern in cmd and results:
                return results.pop(0)
        return 0, b"", b""


@pytest.fixture
def settings(tmp_path):
    return Settings(cache_dir=tmp_path / "cache", backoff_base=0.0, backoff_max=0.0)


@pytest.fixture
def store(settings):
    return CacheStore(settings.cache_dir)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def executor(fetcher, runner, settings):
    return StepExecutor(fetcher=fetcher, runner=runner, settings=settings)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(store, executor, settings, sleeps):
    async def sleep(delay: float) -> None:
        sleeps.append(delay)

    return BuildOrchestrator(store=store, executor=executor, settings=settings, sleep=sleep)


@pytest.fixture
def sandbox(tmp_path):
    """Build sandbox rooted in the test's tmp dir"""
    return create_build_sandbox("test-", tmp_path / "sandbox")


@pytest.fixture
def java_spec():
    return ImageSpec(
        name="java",
        base_image="ubuntu:22.04",
        tools=(tools.JDK, tools.MAVEN, tools.GRADLE),
        workdir="/workspace",
        exposed_ports=frozenset({3000, 8080, 8443, 9090}),
        entrypoint=("tail", "-f", "/dev/null"),
    )


@pytest.fixture
def fixtures_dir():
    return FIXTURES
