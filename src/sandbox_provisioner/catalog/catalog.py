"""Tool and image catalog."""

from typing import Dict, Iterable, List, Optional, Tuple

from sandbox_provisioner.errors import (
    DuplicateImage,
    DuplicateTool,
    UnknownImage,
    UnknownTool,
)
from sandbox_provisioner.logging import get_logger
from sandbox_provisioner.types import ImageSpec, ToolSpec

logger = get_logger(__name__)


class ToolCatalog:
    """In-memory registry of installable tools and sandbox image flavors."""

    def __init__(
        self,
        tools: Iterable[ToolSpec] = (),
        images: Iterable[ImageSpec] = (),
    ):
        self._tools: Dict[Tuple[str, str], ToolSpec] = {}
        self._images: Dict[str, ImageSpec] = {}
        for tool in tools:
            self.register(tool)
        for image in images:
            self.register_image(image)

    def register(self, tool: ToolSpec) -> None:
        key = (tool.tool_name, tool.version)
        existing = self._tools.get(key)
        if existing is not None:
            if existing.install_method != tool.install_method:
                raise DuplicateTool(
                    tool.tool_name,
                    tool.version,
                    existing.install_method.value,
                    tool.install_method.value,
                )
            return
        self._tools[key] = tool
        logger.debug("tool_registered", tool=tool.tool_name, version=tool.version)

    def lookup(self, tool_name: str, version: Optional[str] = None) -> ToolSpec:
        """Find a tool by name, optionally pinned to a version.

        Without a version the most recently registered version wins.
        """
        if version is not None:
            try:
                return self._tools[(tool_name, version)]
            except KeyError:
                raise UnknownTool(tool_name, version) from None

        matches = [t for (name, _), t in self._tools.items() if name == tool_name]
        if not matches:
            raise UnknownTool(tool_name)
        return matches[-1]

    def versions(self, tool_name: str) -> List[str]:
        return [v for (name, v) in self._tools if name == tool_name]

    def register_image(self, image: ImageSpec) -> None:
        if image.name in self._images:
            raise DuplicateImage(image.name)
        self._images[image.name] = image
        logger.debug("image_registered", image=image.name)

    def image(self, name: str) -> ImageSpec:
        try:
            return self._images[name]
        except KeyError:
            raise UnknownImage(name) from None

    def images(self) -> List[ImageSpec]:
        return list(self._images.values())

    def tools(self) -> List[ToolSpec]:
        return list(self._tools.values())

    def __contains__(self, tool_name: str) -> bool:
        return any(name == tool_name for name, _ in self._tools)

    def __len__(self) -> int:
        return len(self._tools)


_DEFAULT_CATALOG: Optional[ToolCatalog] = None


def default_catalog() -> ToolCatalog:
    """Process-wide catalog holding the built-in tools and image flavors."""
    global _DEFAULT_CATALOG
    if _DEFAULT_CATALOG is None:
        from sandbox_provisioner.catalog.images import BUILTIN_IMAGES
        from sandbox_provisioner.catalog.tools import BUILTIN_TOOLS

        _DEFAULT_CATALOG = ToolCatalog(BUILTIN_TOOLS, BUILTIN_IMAGES)
    return _DEFAULT_CATALOG
