"""Final runtime configuration of a built sandbox image."""

import json
from typing import Any, Dict, List, Optional

from sandbox_provisioner.logging import get_logger
from sandbox_provisioner.types import BuildResult, BuildState, ImageMetadata, ImageSpec

logger = get_logger(__name__)

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
LABEL_PREFIX = "org.sandbox-provisioner"


def derive_env(spec: ImageSpec) -> Dict[str, str]:
    """Combine tool-provided env vars with the image's own.

    The image's values win, except PATH which always gets every tool's
    ``bin`` directory appended in tool order.
    """
    env: Dict[str, str] = {}
    tool_bins: List[str] = []

    for tool in spec.tools:
        for key, value in tool.env.items():
            env[key] = value.replace("{path}", tool.installed_path_hint)
        if tool.installed_path_hint:
            bin_dir = f"{tool.installed_path_hint.rstrip('/')}/bin"
            if bin_dir not in tool_bins:
                tool_bins.append(bin_dir)

    env.update(spec.env_vars)

    path_parts = env.get("PATH", DEFAULT_PATH).split(":")
    env["PATH"] = ":".join(path_parts + [b for b in tool_bins if b not in path_parts])

    return dict(sorted(env.items()))


def bind(spec: ImageSpec, result: BuildResult) -> Optional[ImageMetadata]:
    """Finalize env, workdir, ports and entrypoint of a successful build.

    A failed build is left untouched and yields None.
    """
    if result.state == BuildState.FAILED:
        logger.debug("bind_skipped", image=spec.name, build=result.build_id)
        return None

    labels = {
        f"{LABEL_PREFIX}.image": spec.name,
        f"{LABEL_PREFIX}.build-id": result.build_id,
        f"{LABEL_PREFIX}.tools": ",".join(
            f"{t.tool_name}={t.version}" for t in spec.tools
        ),
    }

    image = ImageMetadata(
        name=spec.name,
        base_image=spec.base_image,
        env=derive_env(spec),
        workdir=spec.workdir,
        exposed_ports=tuple(sorted(spec.exposed_ports)),
        entrypoint=tuple(spec.entrypoint),
        labels=labels,
    )

    logger.info(
        "image_bound",
        image=spec.name,
        workdir=image.workdir,
        ports=list(image.exposed_ports),
        entrypoint=list(image.entrypoint),
    )
    return image


def image_config(image: ImageMetadata) -> Dict[str, Any]:
    """Runtime section of an OCI image configuration."""
    return {
        "Env": [f"{k}={v}" for k, v in image.env.items()],
        "WorkingDir": image.workdir,
        "ExposedPorts": {f"{port}/tcp": {} for port in image.exposed_ports},
        "Cmd": list(image.entrypoint),
        "Labels": dict(image.labels),
    }


def render_dockerfile(image: ImageMetadata) -> str:
    """Dockerfile equivalent of the finalized image configuration."""
    lines = [f"FROM {image.base_image}"]
    if image.layer_root is not None:
        lines.append("COPY layer/ /")
    for key, value in image.env.items():
        lines.append(f"ENV {key}={json.dumps(value)}")
    for key, value in image.labels.items():
        lines.append(f"LABEL {key}={json.dumps(value)}")
    lines.append(f"WORKDIR {image.workdir}")
    if image.exposed_ports:
        lines.append("EXPOSE " + " ".join(str(p) for p in image.exposed_ports))
    lines.append(f"CMD {json.dumps(list(image.entrypoint))}")
    return "\n".join(lines) + "\n"
