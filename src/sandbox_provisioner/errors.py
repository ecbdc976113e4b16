"""Error taxonomy for the provisioning pipeline."""

from typing import Any, Dict, List, Optional

from sandbox_provisioner.logging import get_logger

logger = get_logger(__name__)


def log_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    logger=None,
) -> None:
    """Log an error with context."""
    logger = logger or get_logger(__name__)

    error_info: Dict[str, Any] = {
        "error_type": error.__class__.__name__,
        "error_message": str(error),
    }
    if context:
        error_info["context"] = context
    if isinstance(error, ProvisionerError):
        error_info["details"] = error.details

    logger.error("provisioner_error", **error_info)


class ProvisionerError(Exception):
    """Base error class for the provisioner."""

    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}

    @property
    def kind(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self), "details": self.details}


class InvalidSpec(ProvisionerError):
    """Image specification failed validation."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        errors = errors or [message]
        super().__init__(message, details={"errors": errors})
        self.errors = errors


class CatalogError(ProvisionerError):
    """Tool catalog misuse."""


class UnknownTool(CatalogError):
    def __init__(self, tool_name: str, version: Optional[str] = None):
        label = f"{tool_name} {version}" if version else tool_name
        super().__init__(
            f"Tool {label} not found in catalog",
            details={"tool_name": tool_name, "version": version},
        )


class DuplicateTool(CatalogError):
    def __init__(self, tool_name: str, version: str, existing: str, requested: str):
        super().__init__(
            f"Tool {tool_name} {version} already registered as {existing}",
            details={
                "tool_name": tool_name,
                "version": version,
                "existing_method": existing,
                "requested_method": requested,
            },
        )


class UnknownImage(CatalogError):
    def __init__(self, name: str):
        super().__init__(f"Image {name} not found in catalog", details={"name": name})


class DuplicateImage(CatalogError):
    def __init__(self, name: str):
        super().__init__(f"Image {name} already registered", details={"name": name})


class StepError(ProvisionerError):
    """Failure while executing a single provisioning step."""

    def __init__(
        self,
        message: str,
        step_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details={"step_id": step_id, **(details or {})})
        self.step_id = step_id


class TransientFailure(StepError):
    """Network or download error, eligible for retry."""

    retryable = True


class ChecksumOrVersionMismatch(StepError):
    """Cache or downloaded content failed an integrity check."""


class CommandFailure(StepError):
    """Install or configure command exited non-zero."""

    def __init__(
        self,
        command: str,
        returncode: int,
        stdout: bytes = b"",
        stderr: bytes = b"",
        step_id: Optional[str] = None,
    ):
        super().__init__(
            f"Command failed with code {returncode}: {command}",
            step_id=step_id,
            details={
                "command": command,
                "returncode": returncode,
                "stdout": stdout.decode(errors="replace")[-2000:],
                "stderr": stderr.decode(errors="replace")[-2000:],
            },
        )
        self.command = command
        self.returncode = returncode


class BuildCancelled(ProvisionerError):
    """Build was cancelled at a step boundary."""

    def __init__(self, image_name: str, index: int):
        super().__init__(
            f"Build of {image_name} cancelled before step {index}",
            details={"image_name": image_name, "index": index},
        )
