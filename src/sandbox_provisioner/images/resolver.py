"""Validation and resolution of image specifications into ordered steps."""

import re
from pathlib import PurePosixPath
from typing import Dict, List, Tuple

from sandbox_provisioner.errors import InvalidSpec
from sandbox_provisioner.logging import get_logger
from sandbox_provisioner.steps.commands import PACKAGE_MANAGERS, pinned_packages
from sandbox_provisioner.steps.fetching import archive_format
from sandbox_provisioner.types import (
    CacheBinding,
    CacheScope,
    ImageSpec,
    InstallMethod,
    Step,
    StepKind,
    ToolSpec,
    ValidationResult,
)

logger = get_logger(__name__)

SYSTEM_PACKAGE_MANAGER = "apt"
SYSTEM_PACKAGES_CACHE = CacheBinding("apt-archives", CacheScope.SHARED, "/var/cache/apt/archives")

FLOATING_TAGS = frozenset({"latest", "lts", "stable", "current", "next", "nightly", "head"})
RANGE_CHARS = re.compile(r"[*^~<>=|,\s]")
CHECKSUM = re.compile(r"^[0-9a-fA-F]{64}$")


def is_pinned(version: str) -> bool:
    """Whether a version names exactly one release."""
    version = version.strip()
    if not version or version.lower() in FLOATING_TAGS:
        return False
    if RANGE_CHARS.search(version):
        return False
    return not any(part.lower() == "x" for part in version.split("."))


def _valid_image_path(path: str) -> bool:
    pure = PurePosixPath(path)
    return pure.is_absolute() and ".." not in pure.parts


def _tool_errors(tool: ToolSpec) -> List[str]:
    label = f"{tool.tool_name or '<unnamed>'} {tool.version}".strip()
    errors = []

    if not tool.tool_name.strip():
        errors.append("tool name must not be empty")
    if not is_pinned(tool.version):
        errors.append(f"tool {label} version must be pinned (got {tool.version!r})")
    if tool.installed_path_hint and not _valid_image_path(tool.installed_path_hint):
        errors.append(f"tool {label} install path must be absolute: {tool.installed_path_hint}")
    if tool.checksum and not CHECKSUM.match(tool.checksum):
        errors.append(f"tool {label} checksum must be a sha256 hex digest")

    if tool.install_method == InstallMethod.ARCHIVE:
        if not tool.source:
            errors.append(f"tool {label} needs a download URL")
        elif archive_format(tool.source) is None:
            errors.append(f"tool {label} has an unsupported archive format: {tool.source}")
    elif tool.install_method == InstallMethod.PACKAGE_MANAGER:
        if tool.source not in PACKAGE_MANAGERS:
            errors.append(f"tool {label} uses an unsupported package manager: {tool.source!r}")
    elif not tool.source:
        errors.append(f"tool {label} needs an install script")

    return errors


def _cache_bindings(spec: ImageSpec) -> List[CacheBinding]:
    bindings = [SYSTEM_PACKAGES_CACHE] if spec.system_packages else []
    for tool in spec.tools:
        bindings.append(tool.cache_binding)
        bindings.extend(tool.shared_caches)
    return bindings


def validate_spec(spec: ImageSpec) -> ValidationResult:
    """Check an image specification, collecting every problem found."""
    errors = []

    if not spec.name.strip():
        errors.append("name must not be empty")
    if not spec.base_image.strip():
        errors.append("baseImage must not be empty")
    if not spec.workdir:
        errors.append("workdir must not be empty")
    elif not _valid_image_path(spec.workdir):
        errors.append(f"workdir must be an absolute path: {spec.workdir}")
    if not spec.entrypoint:
        errors.append("entrypoint must not be empty")

    for port in sorted(spec.exposed_ports, key=str):
        if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
            errors.append(f"exposed port {port!r} is outside 1-65535")

    for tool in spec.tools:
        errors.extend(_tool_errors(tool))

    scopes: Dict[str, CacheScope] = {}
    for binding in _cache_bindings(spec):
        seen = scopes.setdefault(binding.key, binding.scope)
        if seen != binding.scope:
            errors.append(
                f"cache key {binding.key} is bound as both {seen.value} and {binding.scope.value}"
            )

    for command in spec.setup_commands:
        if not command.strip():
            errors.append("setup commands must not be empty")

    return ValidationResult(is_valid=not errors, errors=errors)


def _tool_step(index: int, tool: ToolSpec) -> Step:
    caches: Tuple[CacheBinding, ...] = (tool.cache_binding,) + tool.shared_caches

    if tool.install_method == InstallMethod.ARCHIVE:
        kind = StepKind.ARCHIVE
        source = tool.source.replace("{version}", tool.version)
        packages: Tuple[str, ...] = ()
    elif tool.install_method == InstallMethod.PACKAGE_MANAGER:
        kind = StepKind.PACKAGES
        source = tool.source
        packages = tool.packages or pinned_packages(
            PACKAGE_MANAGERS[tool.source], tool.tool_name, tool.version
        )
    else:
        kind = StepKind.SCRIPT
        source = tool.source
        packages = ()

    return Step(
        index=index,
        kind=kind,
        name=tool.tool_name,
        version=tool.version,
        source=source,
        packages=packages,
        caches=caches,
        install_path=tool.installed_path_hint,
        checksum=tool.checksum.lower() if tool.checksum else None,
    )


def resolve(spec: ImageSpec) -> List[Step]:
    """Map an image specification onto its ordered provisioning steps.

    System packages come first, then each tool in declared order, then the
    setup commands. The mapping is pure: equal specs give equal steps.
    """
    result = validate_spec(spec)
    if not result.is_valid:
        logger.warning("spec_invalid", image=spec.name, errors=result.errors)
        raise InvalidSpec(
            f"Invalid image specification {spec.name!r}: {'; '.join(result.errors)}",
            errors=result.errors,
        )

    steps: List[Step] = []
    if spec.system_packages:
        steps.append(
            Step(
                index=len(steps),
                kind=StepKind.PACKAGES,
                name="system-packages",
                source=SYSTEM_PACKAGE_MANAGER,
                packages=spec.system_packages,
                caches=(SYSTEM_PACKAGES_CACHE,),
            )
        )

    for tool in spec.tools:
        steps.append(_tool_step(len(steps), tool))

    for command in spec.setup_commands:
        steps.append(
            Step(index=len(steps), kind=StepKind.CONFIGURE, name="setup", source=command)
        )

    logger.debug("spec_resolved", image=spec.name, steps=[s.step_id for s in steps])
    return steps
