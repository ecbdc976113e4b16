"""Built-in sandbox image flavors, one per supported language."""

from sandbox_provisioner.catalog import tools
from sandbox_provisioner.types import ImageSpec

BASE_IMAGE = "ubuntu:22.04"
WORKDIR = "/workspace"

BASE_SYSTEM_PACKAGES = (
    "bash",
    "ca-certificates",
    "curl",
    "git",
    "openssh-client",
    "unzip",
    "wget",
)

GIT_SETUP = (
    "git config --global init.defaultBranch main",
    "git config --global --add safe.directory /workspace/project",
)

JAVA = ImageSpec(
    name="java",
    base_image=BASE_IMAGE,
    tools=(
        tools.JDK,
        tools.MAVEN,
        tools.GRADLE,
        tools.NODE,
        tools.PNPM,
        tools.YARN,
        tools.TYPESCRIPT,
        tools.TSX,
    ),
    env_vars={"JAVA_OPTS": "-Xmx2g -XX:+UseG1GC"},
    workdir=WORKDIR,
    exposed_ports=frozenset({3000, 8080, 8443, 9090}),
    system_packages=BASE_SYSTEM_PACKAGES,
    setup_commands=GIT_SETUP,
)

NODE = ImageSpec(
    name="node",
    base_image=BASE_IMAGE,
    tools=(tools.NODE, tools.PNPM, tools.YARN, tools.TYPESCRIPT, tools.TSX),
    env_vars={"NPM_CONFIG_UPDATE_NOTIFIER": "false"},
    workdir=WORKDIR,
    exposed_ports=frozenset({3000, 5173, 8080}),
    system_packages=BASE_SYSTEM_PACKAGES,
    setup_commands=GIT_SETUP,
)

PYTHON = ImageSpec(
    name="python",
    base_image=BASE_IMAGE,
    tools=(tools.UV, tools.PYTHON),
    workdir=WORKDIR,
    exposed_ports=frozenset({5000, 8000, 8888}),
    system_packages=BASE_SYSTEM_PACKAGES + ("build-essential",),
    setup_commands=GIT_SETUP,
)

BUILTIN_IMAGES = (JAVA, NODE, PYTHON)
