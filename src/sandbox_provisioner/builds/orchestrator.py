"""Build orchestration: resolve, execute steps with retries, bind."""

import asyncio
import dataclasses
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

from fuuid import b58_fuuid

from sandbox_provisioner.builds.sandbox import cleanup_build_sandbox, create_build_sandbox
from sandbox_provisioner.caches.store import CacheStore, default_store
from sandbox_provisioner.config import Settings, load_settings
from sandbox_provisioner.errors import (
    BuildCancelled,
    CommandFailure,
    ProvisionerError,
    log_error,
)
from sandbox_provisioner.images.binder import bind
from sandbox_provisioner.images.resolver import resolve
from sandbox_provisioner.logging import get_logger
from sandbox_provisioner.steps.executor import StepExecutor
from sandbox_provisioner.types import (
    BuildResult,
    BuildSandbox,
    BuildState,
    FailedStep,
    ImageSpec,
    Step,
    StepRecord,
)

logger = get_logger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class StepFailed(Exception):
    """A step error together with the attempts spent on it"""

    def __init__(self, error: ProvisionerError, attempts: int):
        super().__init__(str(error))
        self.error = error
        self.attempts = attempts


class BuildOrchestrator:
    """Drives one ImageSpec from resolution to a terminal BuildResult."""

    def __init__(
        self,
        store: Optional[CacheStore] = None,
        executor: Optional[StepExecutor] = None,
        settings: Optional[Settings] = None,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.settings = settings or load_settings()
        self.store = store or CacheStore(self.settings.cache_dir)
        self.executor = executor or StepExecutor(settings=self.settings)
        self.sleep = sleep

    async def build(
        self,
        spec: ImageSpec,
        cancel_event: Optional[asyncio.Event] = None,
        layer_root: Optional[Path] = None,
    ) -> BuildResult:
        result = BuildResult(build_id=b58_fuuid(), image_name=spec.name)
        logger.info("build_started", image=spec.name, build=result.build_id)

        result.transition(BuildState.RESOLVING)
        try:
            steps = resolve(spec)
        except ProvisionerError as e:
            log_error(e, {"image": spec.name, "build": result.build_id}, logger)
            result.fail(FailedStep(error_kind=e.kind, message=str(e)))
            return result

        sandbox = create_build_sandbox(f"sandbox-build-{spec.name}-", layer_root)
        try:
            for step in steps:
                if cancel_event is not None and cancel_event.is_set():
                    error = BuildCancelled(spec.name, step.index)
                    logger.warning("build_cancelled", image=spec.name, index=step.index)
                    result.fail(
                        FailedStep(
                            error_kind=error.kind,
                            message=str(error),
                            step_id=step.step_id,
                            index=step.index,
                        )
                    )
                    return result

                result.transition(BuildState.EXECUTING, step.index)
                try:
                    record = await self._run_step(result, step, sandbox)
                except StepFailed as failure:
                    log_error(
                        failure.error,
                        {"image": spec.name, "build": result.build_id, "step": step.step_id},
                        logger,
                    )
                    result.fail(
                        FailedStep(
                            error_kind=failure.error.kind,
                            message=str(failure.error),
                            step_id=step.step_id,
                            index=step.index,
                            attempts=failure.attempts,
                        )
                    )
                    return result
                result.record_success(record)

            image = bind(spec, result)
            if layer_root is not None:
                image = dataclasses.replace(image, layer_root=sandbox.root)
            result.succeed(image)
        finally:
            cleanup_build_sandbox(sandbox)

        logger.info(
            "build_succeeded",
            image=spec.name,
            build=result.build_id,
            steps=len(result.succeeded_steps),
            cached=sum(1 for r in result.succeeded_steps if r.cached),
        )
        return result

    async def _run_step(self, result: BuildResult, step: Step, sandbox: BuildSandbox) -> StepRecord:
        """Execute one step, retrying transient and (optionally) command failures."""
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.store.hold(step.caches, owner=result.build_id) as mounts:
                    outcome = await self.executor.execute(step, mounts, sandbox)
                return StepRecord(
                    step_id=step.step_id,
                    index=step.index,
                    kind=step.kind,
                    attempts=attempt,
                    cached=outcome.cached,
                )
            except ProvisionerError as e:
                if attempt >= self._attempt_limit(e):
                    raise StepFailed(e, attempt) from e
                await self._backoff(result, step, attempt, e)

    def _attempt_limit(self, error: ProvisionerError) -> int:
        if error.retryable:
            return self.settings.max_attempts
        if isinstance(error, CommandFailure):
            return 1 + self.settings.command_retries
        return 1

    async def _backoff(
        self, result: BuildResult, step: Step, attempt: int, error: ProvisionerError
    ) -> None:
        delay = self.settings.backoff(attempt)
        result.transition(BuildState.RETRYING, step.index)
        logger.warning(
            "step_retrying",
            step=step.step_id,
            attempt=attempt,
            delay=delay,
            error=str(error),
        )
        await self.sleep(delay)
        result.transition(BuildState.EXECUTING, step.index)

    async def build_many(self, specs: Sequence[ImageSpec]) -> List[BuildResult]:
        """Build several specs concurrently; results keep the input order."""
        return list(await asyncio.gather(*(self.build(spec) for spec in specs)))


_DEFAULT_ORCHESTRATOR: Optional[BuildOrchestrator] = None


def default_orchestrator() -> BuildOrchestrator:
    global _DEFAULT_ORCHESTRATOR
    if _DEFAULT_ORCHESTRATOR is None:
        _DEFAULT_ORCHESTRATOR = BuildOrchestrator(store=default_store())
    return _DEFAULT_ORCHESTRATOR


async def build(spec: ImageSpec) -> BuildResult:
    """Build one sandbox image with the process-wide orchestrator."""
    return await default_orchestrator().build(spec)
