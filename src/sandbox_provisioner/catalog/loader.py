"""Load image specification documents (TOML or JSON)."""

import dataclasses
import json
import shlex
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import tomli

from sandbox_provisioner.catalog.catalog import ToolCatalog, default_catalog
from sandbox_provisioner.errors import InvalidSpec
from sandbox_provisioner.logging import get_logger
from sandbox_provisioner.types import (
    KEEP_ALIVE_ENTRYPOINT,
    CacheBinding,
    CacheScope,
    ImageSpec,
    InstallMethod,
    ToolSpec,
)

logger = get_logger(__name__)


def _enum(enum_cls, raw: Any, field: str):
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise InvalidSpec(f"{field} must be one of: {allowed} (got {raw!r})") from None


def _string_list(data: Mapping[str, Any], key: str) -> List[str]:
    value = data.get(key, [])
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise InvalidSpec(f"{key} must be a list")
    return [str(v) for v in value]


def _string_map(data: Mapping[str, Any], key: str) -> Dict[str, str]:
    value = data.get(key, {})
    if not isinstance(value, Mapping):
        raise InvalidSpec(f"{key} must be a table of strings")
    return {str(k): str(v) for k, v in value.items()}


def _shared_caches(entries: Any, tool_name: str) -> tuple:
    if not isinstance(entries, list):
        raise InvalidSpec(f"sharedCaches of {tool_name} must be a list")
    bindings = []
    for entry in entries:
        if not isinstance(entry, Mapping) or "key" not in entry:
            raise InvalidSpec(f"sharedCaches of {tool_name} entries need a key")
        bindings.append(
            CacheBinding(str(entry["key"]), CacheScope.SHARED, str(entry.get("target", "")))
        )
    return tuple(bindings)


def tool_spec_from_dict(data: Mapping[str, Any], catalog: ToolCatalog) -> ToolSpec:
    """Build a ToolSpec, completing partial entries from the catalog."""
    if not isinstance(data, Mapping):
        raise InvalidSpec("tools entries must be tables")

    name = data.get("toolName", data.get("name"))
    if not name:
        raise InvalidSpec("tools entries need a name")
    name = str(name)
    version = "" if data.get("version") is None else str(data["version"])

    if "installMethod" in data:
        base = ToolSpec(
            tool_name=name,
            version=version,
            install_method=_enum(InstallMethod, data["installMethod"], f"installMethod of {name}"),
        )
    else:
        # Only the version comes from the document; the rest is the catalog's
        base = catalog.lookup(name)

    overrides: Dict[str, Any] = {"tool_name": name, "version": version}
    if "installedPathHint" in data:
        overrides["installed_path_hint"] = str(data["installedPathHint"])
    if "source" in data:
        overrides["source"] = str(data["source"])
    if "packages" in data:
        overrides["packages"] = tuple(_string_list(data, "packages"))
    if "checksum" in data:
        overrides["checksum"] = str(data["checksum"]) if data["checksum"] else None
    if "scope" in data:
        overrides["scope"] = _enum(CacheScope, data["scope"], f"scope of {name}")
    if "sharedCaches" in data:
        overrides["shared_caches"] = _shared_caches(data["sharedCaches"], name)
    if "env" in data:
        overrides["env"] = _string_map(data, "env")

    return dataclasses.replace(base, **overrides)


def image_spec_from_dict(
    data: Mapping[str, Any], catalog: Optional[ToolCatalog] = None
) -> ImageSpec:
    """Build an ImageSpec from a parsed specification document."""
    catalog = catalog or default_catalog()
    if not isinstance(data, Mapping):
        raise InvalidSpec("Image specification must be a table")

    tools = data.get("tools", [])
    if not isinstance(tools, list):
        raise InvalidSpec("tools must be a list")

    ports = data.get("exposedPorts", [])
    if not isinstance(ports, list):
        raise InvalidSpec("exposedPorts must be a list")
    for port in ports:
        if isinstance(port, bool) or not isinstance(port, int):
            raise InvalidSpec(f"exposedPorts must be integers (got {port!r})")

    entrypoint = data.get("entrypoint", list(KEEP_ALIVE_ENTRYPOINT))
    if isinstance(entrypoint, str):
        entrypoint = shlex.split(entrypoint)

    return ImageSpec(
        name=str(data.get("name", "")),
        base_image=str(data.get("baseImage", "")),
        tools=tuple(tool_spec_from_dict(t, catalog) for t in tools),
        env_vars=_string_map(data, "envVars"),
        workdir=str(data.get("workdir", "")),
        exposed_ports=frozenset(ports),
        entrypoint=tuple(str(arg) for arg in entrypoint),
        system_packages=tuple(_string_list(data, "systemPackages")),
        setup_commands=tuple(_string_list(data, "setupCommands")),
    )


def load_image_spec(path: Path, catalog: Optional[ToolCatalog] = None) -> ImageSpec:
    """Load an image specification from a ``.toml`` or ``.json`` file."""
    path = Path(path)
    try:
        if path.suffix == ".toml":
            with open(path, "rb") as f:
                data = tomli.load(f)
        elif path.suffix == ".json":
            data = json.loads(path.read_text())
        else:
            raise InvalidSpec(f"Unsupported specification format: {path.suffix}")
    except (tomli.TOMLDecodeError, json.JSONDecodeError) as e:
        raise InvalidSpec(f"Failed to parse {path.name}: {e}") from e

    logger.debug("spec_document_loaded", path=str(path))
    return image_spec_from_dict(data, catalog)
