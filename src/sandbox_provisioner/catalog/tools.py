"""Built-in tool definitions."""

from sandbox_provisioner.types import CacheBinding, CacheScope, InstallMethod, ToolSpec

MAVEN_REPOSITORY = CacheBinding("maven-repository", CacheScope.SHARED, "/root/.m2")
GRADLE_HOME = CacheBinding("gradle-home", CacheScope.SHARED, "/root/.gradle")
NPM_CACHE = CacheBinding("npm-cache", CacheScope.SHARED, "/root/.npm")
UV_CACHE = CacheBinding("uv-cache", CacheScope.SHARED, "/root/.cache/uv")

JDK = ToolSpec(
    tool_name="jdk",
    version="21",
    install_method=InstallMethod.ARCHIVE,
    installed_path_hint="/opt/java/openjdk",
    source=(
        "https://download.java.net/java/GA/jdk{version}/"
        "fd2272bbf8e04c3dbaee13770090416c/35/GPL/openjdk-{version}_linux-x64_bin.tar.gz"
    ),
    env={"JAVA_HOME": "{path}"},
)

MAVEN = ToolSpec(
    tool_name="maven",
    version="3.9.6",
    install_method=InstallMethod.ARCHIVE,
    installed_path_hint="/opt/maven",
    source=(
        "https://archive.apache.org/dist/maven/maven-3/{version}/binaries/"
        "apache-maven-{version}-bin.tar.gz"
    ),
    shared_caches=(MAVEN_REPOSITORY,),
    env={
        "MAVEN_HOME": "{path}",
        "MAVEN_OPTS": "-Dmaven.repo.local=/root/.m2/repository",
    },
)

GRADLE = ToolSpec(
    tool_name="gradle",
    version="8.5",
    install_method=InstallMethod.ARCHIVE,
    installed_path_hint="/opt/gradle",
    source="https://services.gradle.org/distributions/gradle-{version}-bin.zip",
    shared_caches=(GRADLE_HOME,),
    env={"GRADLE_HOME": "{path}", "GRADLE_USER_HOME": "/root/.gradle"},
)

NODE = ToolSpec(
    tool_name="node",
    version="20.10.0",
    install_method=InstallMethod.ARCHIVE,
    installed_path_hint="/opt/node",
    source="https://nodejs.org/dist/v{version}/node-v{version}-linux-x64.tar.gz",
    env={"NODE_NO_WARNINGS": "1"},
)


def _npm_global(name: str, version: str) -> ToolSpec:
    return ToolSpec(
        tool_name=name,
        version=version,
        install_method=InstallMethod.PACKAGE_MANAGER,
        installed_path_hint=f"/opt/npm-global/{name}",
        source="npm",
        shared_caches=(NPM_CACHE,),
    )


PNPM = _npm_global("pnpm", "8.15.1")
YARN = _npm_global("yarn", "1.22.21")
TYPESCRIPT = _npm_global("typescript", "5.3.3")
TSX = _npm_global("tsx", "4.7.0")

UV = ToolSpec(
    tool_name="uv",
    version="0.1.24",
    install_method=InstallMethod.SCRIPT,
    installed_path_hint="/opt/uv",
    source=(
        "curl -LsSf https://astral.sh/uv/{version}/install.sh"
        " | env UV_INSTALL_DIR={dest}/bin INSTALLER_NO_MODIFY_PATH=1 sh"
    ),
    shared_caches=(UV_CACHE,),
    env={"UV_CACHE_DIR": "/root/.cache/uv"},
)

PYTHON = ToolSpec(
    tool_name="python",
    version="3.12.1",
    install_method=InstallMethod.SCRIPT,
    installed_path_hint="/opt/python",
    source="UV_PYTHON_INSTALL_DIR={dest} uv python install {version}",
    shared_caches=(UV_CACHE,),
    env={"PYTHONUNBUFFERED": "1", "PYTHONDONTWRITEBYTECODE": "1"},
)

BUILTIN_TOOLS = (JDK, MAVEN, GRADLE, NODE, PNPM, YARN, TYPESCRIPT, TSX, UV, PYTHON)
