"""Core type definitions"""

from dataclasses import dataclass, field
from types import MappingProxyType
from enum import Enum
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from sandbox_provisioner.utils.generic import dict_to_hash, safe_name

KEEP_ALIVE_ENTRYPOINT = ("tail", "-f", "/dev/null")


class InstallMethod(Enum):
    ARCHIVE = "archive-download"
    PACKAGE_MANAGER = "package-manager"
    SCRIPT = "script"


class CacheScope(Enum):
    PER_TOOL = "per-tool"
    SHARED = "shared-global"


class StepKind(Enum):
    ARCHIVE = "archive"
    PACKAGES = "packages"
    SCRIPT = "script"
    CONFIGURE = "configure"


BuildState = Enum(
    "BuildState",
    ["PENDING", "RESOLVING", "EXECUTING", "RETRYING", "FAILED", "SUCCEEDED"],
)

TERMINAL_STATES = frozenset({BuildState.FAILED, BuildState.SUCCEEDED})


@dataclass(frozen=True)
class CacheBinding:
    """A cache key a step needs, and where the image would mount it.

    Keys are normalized to their on-disk name, so two keys that share a
    directory are the same key everywhere.
    """

    key: str
    scope: CacheScope = CacheScope.PER_TOOL
    target: str = ""

    def __post_init__(self):
        object.__setattr__(self, "key", safe_name(self.key))


@dataclass(frozen=True)
class ToolSpec:
    """One installable unit of a sandbox image"""

    tool_name: str
    version: str
    install_method: InstallMethod
    installed_path_hint: str = ""
    source: str = ""
    packages: Tuple[str, ...] = ()
    checksum: Optional[str] = None
    scope: CacheScope = CacheScope.PER_TOOL
    shared_caches: Tuple[CacheBinding, ...] = ()
    env: Dict[str, str] = field(default_factory=dict, hash=False)

    @property
    def cache_key(self) -> str:
        return f"{safe_name(self.tool_name)}-{safe_name(self.version)}"

    @property
    def cache_binding(self) -> CacheBinding:
        return CacheBinding(self.cache_key, self.scope, self.installed_path_hint)


@dataclass(frozen=True)
class ImageSpec:
    """Declarative definition of one sandbox flavor"""

    name: str
    base_image: str
    tools: Tuple[ToolSpec, ...] = ()
    env_vars: Dict[str, str] = field(default_factory=dict, hash=False)
    workdir: str = "/workspace"
    exposed_ports: FrozenSet[int] = frozenset()
    entrypoint: Tuple[str, ...] = KEEP_ALIVE_ENTRYPOINT
    system_packages: Tuple[str, ...] = ()
    setup_commands: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CacheMount:
    """A persistent directory keyed by a cache key"""

    key: str
    mount_path: Path
    scope: CacheScope


@dataclass(frozen=True)
class Step:
    """One provisioning action produced by the resolver"""

    index: int
    kind: StepKind
    name: str
    version: str = ""
    source: str = ""
    packages: Tuple[str, ...] = ()
    caches: Tuple[CacheBinding, ...] = ()
    install_path: str = ""
    checksum: Optional[str] = None

    @property
    def step_id(self) -> str:
        return f"{self.index:02d}-{self.kind.value}-{safe_name(self.name)}"

    @property
    def artifact_name(self) -> str:
        # One directory per fingerprint, like the marker that points at it
        if self.version:
            return f"{safe_name(self.name)}-{safe_name(self.version)}-{self.fingerprint[:12]}"
        return f"{safe_name(self.name)}-{self.fingerprint[:12]}"

    @property
    def fingerprint(self) -> str:
        # Index is excluded so the same install is shared across images
        return dict_to_hash(
            {
                "kind": self.kind.value,
                "name": self.name,
                "version": self.version,
                "source": self.source,
                "packages": list(self.packages),
                "checksum": self.checksum,
            }
        )


@dataclass(frozen=True)
class StepOutcome:
    step_id: str
    cached: bool
    artifact: Optional[Path] = None


@dataclass(frozen=True)
class StepRecord:
    """A step that completed successfully within a build"""

    step_id: str
    index: int
    kind: StepKind
    attempts: int = 1
    cached: bool = False

    @property
    def retried(self) -> bool:
        return self.attempts > 1


@dataclass(frozen=True)
class FailedStep:
    error_kind: str
    message: str
    step_id: Optional[str] = None
    index: Optional[int] = None
    attempts: int = 0


@dataclass(frozen=True)
class ImageMetadata:
    """Finalized runtime configuration of a built image"""

    name: str
    base_image: str
    env: Dict[str, str] = field(hash=False)
    workdir: str
    exposed_ports: Tuple[int, ...]
    entrypoint: Tuple[str, ...]
    labels: Dict[str, str] = field(default_factory=dict, hash=False)
    layer_root: Optional[Path] = None


@dataclass(frozen=True)
class ValidationResult:
    """Validation result with optional error details"""

    is_valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class BuildResult:
    """Outcome of one orchestration run.

    Mutated by the orchestrator while the build runs, sealed once it reaches
    a terminal state.
    """

    build_id: str
    image_name: str
    state: BuildState = BuildState.PENDING
    succeeded_steps: List[StepRecord] = field(default_factory=list)
    failed_step: Optional[FailedStep] = None
    final_env: Dict[str, str] = field(default_factory=dict)
    final_entrypoint: Tuple[str, ...] = ()
    image: Optional[ImageMetadata] = None
    history: List[Tuple[BuildState, Optional[int]]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.history.append((self.state, None))

    def __setattr__(self, name: str, value: Any) -> None:
        if self.__dict__.get("_sealed"):
            raise AttributeError(f"BuildResult {self.build_id} is terminal")
        super().__setattr__(name, value)

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.state == BuildState.SUCCEEDED

    def transition(self, state: BuildState, index: Optional[int] = None) -> None:
        self._check_open()
        self.state = state
        self.history.append((state, index))

    def record_success(self, record: StepRecord) -> None:
        self._check_open()
        self.succeeded_steps.append(record)

    def fail(self, failed: FailedStep) -> None:
        self.failed_step = failed
        self.transition(BuildState.FAILED, failed.index)
        self._seal()

    def succeed(self, image: ImageMetadata) -> None:
        self.image = image
        self.final_env = dict(image.env)
        self.final_entrypoint = image.entrypoint
        self.transition(BuildState.SUCCEEDED)
        self._seal()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "build_id": self.build_id,
            "image_name": self.image_name,
            "state": self.state.name.lower(),
            "succeeded_steps": [
                {
                    "step_id": r.step_id,
                    "attempts": r.attempts,
                    "cached": r.cached,
                    "retried": r.retried,
                }
                for r in self.succeeded_steps
            ],
            "failed_step": (
                {
                    "step_id": self.failed_step.step_id,
                    "error_kind": self.failed_step.error_kind,
                    "message": self.failed_step.message,
                    "attempts": self.failed_step.attempts,
                }
                if self.failed_step
                else None
            ),
            "final_env": dict(self.final_env),
            "final_entrypoint": list(self.final_entrypoint),
        }

    def _check_open(self) -> None:
        if self.terminal:
            raise AttributeError(f"BuildResult {self.build_id} is terminal")

    def _seal(self) -> None:
        # Freeze collections so the terminal result cannot be mutated in place
        object.__setattr__(self, "succeeded_steps", tuple(self.succeeded_steps))
        object.__setattr__(self, "history", tuple(self.history))
        object.__setattr__(self, "final_env", MappingProxyType(dict(self.final_env)))
        object.__setattr__(self, "_sealed", True)


@dataclass(frozen=True)
class BuildSandbox:
    """Scratch area of one build, holding the image layer being populated"""

    root: Path
    layer_dir: Path
    tmp_dir: Path
    home_dir: Path
    env_vars: Dict[str, str] = field(hash=False)
    temp_dir: Optional[TemporaryDirectory] = field(default=None, compare=False, hash=False)

    def layer_path(self, image_path: str) -> Path:
        """Map an absolute path inside the image onto the layer directory."""
        return self.layer_dir / image_path.lstrip("/")
