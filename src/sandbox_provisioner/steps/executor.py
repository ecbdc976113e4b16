"""Execution of single provisioning steps against cache mounts."""

import shutil
import time
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Dict, Mapping, Optional, Tuple

from sandbox_provisioner.builds.sandbox import add_layer_bin_path
from sandbox_provisioner.caches.markers import read_marker, write_marker
from sandbox_provisioner.config import Settings, load_settings
from sandbox_provisioner.errors import ChecksumOrVersionMismatch, CommandFailure, StepError
from sandbox_provisioner.logging import get_logger
from sandbox_provisioner.steps.commands import (
    build_install_command,
    get_package_manager,
    render_script,
    run_command,
)
from sandbox_provisioner.steps.fetching import (
    archive_filename,
    archive_format,
    download_url,
    extract_archive,
)
from sandbox_provisioner.types import (
    BuildSandbox,
    CacheMount,
    CacheScope,
    Step,
    StepKind,
    StepOutcome,
)
from sandbox_provisioner.utils.fs import compute_file_hash, copy_tree, remove_tree, strip_single_root

logger = get_logger(__name__)

Fetcher = Callable[[str, Path, float], Awaitable[None]]
Runner = Callable[[str, Path, Mapping[str, str]], Awaitable[Tuple[int, bytes, bytes]]]


class StepExecutor:
    """Runs one step, skipping work a cache mount already records as done.

    ``fetcher`` and ``runner`` are the only collaborators that touch the
    network or spawn processes.
    """

    def __init__(
        self,
        fetcher: Fetcher = download_url,
        runner: Runner = run_command,
        settings: Optional[Settings] = None,
    ):
        self.fetcher = fetcher
        self.runner = runner
        self.settings = settings or load_settings()

    async def execute(
        self, step: Step, mounts: Mapping[str, CacheMount], sandbox: BuildSandbox
    ) -> StepOutcome:
        start = time.monotonic()
        logger.info("step_started", step=step.step_id, kind=step.kind.value)

        try:
            if step.kind == StepKind.CONFIGURE:
                await self._run(step, step.source, sandbox.layer_dir, sandbox, {})
                outcome = StepOutcome(step_id=step.step_id, cached=False)
            else:
                outcome = await self._install(step, mounts, sandbox)
        except StepError as e:
            raise tag_step_error(e, step)

        logger.info(
            "step_complete",
            step=step.step_id,
            cached=outcome.cached,
            duration=round(time.monotonic() - start, 3),
        )
        return outcome

    async def _install(
        self, step: Step, mounts: Mapping[str, CacheMount], sandbox: BuildSandbox
    ) -> StepOutcome:
        primary = mounts[step.caches[0].key]
        artifact = primary.mount_path / step.artifact_name
        fingerprint = step.fingerprint

        marker = read_marker(primary, fingerprint)
        if marker is not None:
            self._verify_marker(step, marker, artifact)
            logger.info("step_cached", step=step.step_id, artifact=str(artifact))
            self._publish(step, artifact, sandbox)
            return StepOutcome(step_id=step.step_id, cached=True, artifact=artifact)

        if artifact.exists():
            # Left behind by an interrupted install that never wrote its marker
            logger.warning("discarding_partial_artifact", step=step.step_id, path=str(artifact))
            remove_tree(artifact)

        staging = primary.mount_path / f".{step.artifact_name}.partial-{uuid.uuid4().hex[:8]}"
        staging.mkdir(parents=True)
        try:
            dest = staging / "root"
            dest.mkdir()
            cache = self._scratch_cache(step, mounts, primary)

            if step.kind == StepKind.ARCHIVE:
                checksum = await self._fetch_archive(step, staging, dest)
            elif step.kind == StepKind.PACKAGES:
                manager = get_package_manager(step.source)
                cmd, env = build_install_command(manager, step.packages, dest, cache)
                await self._run(step, cmd, staging, sandbox, env)
                checksum = None
            else:
                cmd = render_script(step.source, step.version, dest, cache)
                await self._run(step, cmd, staging, sandbox, {})
                checksum = None

            # Rename before marking so a marker always points at a complete artifact
            dest.rename(artifact)
            write_marker(
                primary,
                fingerprint,
                {
                    "step": step.name,
                    "kind": step.kind.value,
                    "version": step.version,
                    "checksum": checksum,
                    "artifact": artifact.name,
                },
            )
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("step_installed", step=step.step_id, artifact=str(artifact))
        self._publish(step, artifact, sandbox)
        return StepOutcome(step_id=step.step_id, cached=False, artifact=artifact)

    async def _fetch_archive(self, step: Step, staging: Path, dest: Path) -> str:
        url = step.source
        archive = staging / archive_filename(url)
        await self.fetcher(url, archive, self.settings.download_timeout)

        if not archive.exists() or archive.stat().st_size == 0:
            raise ChecksumOrVersionMismatch(
                f"Downloaded archive for {step.name} {step.version} is missing or empty",
                step_id=step.step_id,
                details={"url": url},
            )

        computed = compute_file_hash(archive)
        if step.checksum and computed != step.checksum.lower():
            logger.error(
                "checksum_verification_failed",
                step=step.step_id,
                computed=computed,
                expected=step.checksum,
            )
            raise ChecksumOrVersionMismatch(
                f"Checksum mismatch for {step.name} {step.version}",
                step_id=step.step_id,
                details={"url": url, "computed": computed, "expected": step.checksum},
            )

        unpacked = extract_archive(archive, staging / "unpacked", archive_format(url))
        # Move the archive's single top-level directory (if any) into place
        dest.rmdir()
        strip_single_root(unpacked).rename(dest)
        return computed

    def _verify_marker(self, step: Step, marker: Dict, artifact: Path) -> None:
        problems = []
        if marker.get("fingerprint") != step.fingerprint:
            problems.append("fingerprint")
        if marker.get("version") != step.version:
            problems.append("version")
        if step.checksum and marker.get("checksum") != step.checksum.lower():
            problems.append("checksum")
        if not artifact.is_dir():
            problems.append("artifact")

        if problems:
            logger.error(
                "cache_validation_failed",
                step=step.step_id,
                problems=problems,
                marker=marker,
            )
            raise ChecksumOrVersionMismatch(
                f"Cache for {step.name} {step.version} is inconsistent: {', '.join(problems)}",
                step_id=step.step_id,
                details={"problems": problems, "artifact": str(artifact)},
            )

    def _scratch_cache(
        self, step: Step, mounts: Mapping[str, CacheMount], primary: CacheMount
    ) -> Path:
        """Download cache handed to package managers and scripts."""
        for binding in step.caches[1:]:
            if binding.scope == CacheScope.SHARED:
                return mounts[binding.key].mount_path
        cache = primary.mount_path / ".cache"
        cache.mkdir(exist_ok=True)
        return cache

    async def _run(
        self,
        step: Step,
        cmd: str,
        cwd: Path,
        sandbox: BuildSandbox,
        extra_env: Mapping[str, str],
    ) -> None:
        env = {**sandbox.env_vars, **extra_env}
        try:
            returncode, stdout, stderr = await self.runner(cmd, cwd, env)
        except OSError as e:
            raise CommandFailure(cmd, -1, stderr=str(e).encode(), step_id=step.step_id) from e

        if returncode != 0:
            logger.error(
                "command_failed",
                step=step.step_id,
                cmd=cmd,
                returncode=returncode,
                stderr=stderr.decode(errors="replace")[-500:],
            )
            raise CommandFailure(cmd, returncode, stdout, stderr, step_id=step.step_id)

    def _publish(self, step: Step, artifact: Path, sandbox: BuildSandbox) -> None:
        """Copy an installed artifact into the image layer at its install path."""
        if not step.install_path:
            return
        copy_tree(artifact, sandbox.layer_path(step.install_path))
        add_layer_bin_path(sandbox, step.install_path)


def tag_step_error(error: StepError, step: Step) -> StepError:
    if error.step_id is None:
        error.step_id = step.step_id
        error.details["step_id"] = step.step_id
    return error
