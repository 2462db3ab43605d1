"""领域数据结构定义：工具链、镜像、构建产物与校验调用等核心值对象。"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from dotchess_env.domain.enums import BuildProfile


def normalize_version(version: str) -> str:
    """去掉版本号前缀 `v`，cargo 只接受纯 semver 文本。"""
    text = version.strip()
    if text[:1] in {"v", "V"}:
        text = text[1:]
    return text


def version_satisfies(installed: str | None, requested: str | None) -> bool:
    """判断已安装版本是否满足请求版本；请求为 1.0 时 1.0.3 也视为满足。"""
    if requested is None:
        return installed is not None
    if installed is None:
        return False
    have = normalize_version(installed).split(".")
    want = normalize_version(requested).split(".")
    if len(want) > len(have):
        return False
    return have[: len(want)] == want


@dataclass(frozen=True, slots=True)
class AuxiliaryTool:
    """通过 cargo install 安装的辅助命令行工具。"""
    name: str
    version: str | None = None
    flags: tuple[str, ...] = ()

    def install_args(self) -> list[str]:
        args = ["install", self.name]
        if self.version:
            args.extend(["--version", normalize_version(self.version)])
        args.extend(self.flags)
        return args


@dataclass(frozen=True, slots=True)
class ToolchainSpec:
    """工具链声明：channel、编译目标、源码组件与辅助工具。"""
    channel: str
    targets: tuple[str, ...] = ()
    components: tuple[str, ...] = ()
    tools: tuple[AuxiliaryTool, ...] = ()

    def __post_init__(self) -> None:
        if not self.channel.strip():
            raise ValueError("toolchain channel is required")
        # 去重但保留声明顺序，保证安装顺序稳定。
        object.__setattr__(self, "targets", tuple(dict.fromkeys(self.targets)))
        object.__setattr__(self, "components", tuple(dict.fromkeys(self.components)))
        names = [tool.name for tool in self.tools]
        if len(names) != len(set(names)):
            raise ValueError("auxiliary tools must be unique by name")


@dataclass(frozen=True, slots=True)
class AptSource:
    """一条 apt 源声明，例如 `deb http://ftp.de.debian.org/debian/ testing main`。"""
    uri: str
    suite: str
    sections: tuple[str, ...] = ("main",)
    kind: str = "deb"

    def line(self) -> str:
        return " ".join([self.kind, self.uri, self.suite, *self.sections])


@dataclass(frozen=True, slots=True)
class ContainerImageSpec:
    """容器镜像声明：基础镜像、额外 apt 源与有序软件包列表。"""
    base_image: str
    packages: tuple[str, ...] = ()
    sources: tuple[AptSource, ...] = ()
    build_args: tuple[str, ...] = ()
    env: tuple[tuple[str, str], ...] = ()

    def registered_suites(self) -> set[str]:
        return {source.suite for source in self.sources}


@dataclass(frozen=True, slots=True)
class Recipe:
    """一个完整环境配方：镜像部分与工具链部分。"""
    name: str
    description: str
    image: ContainerImageSpec
    toolchain: ToolchainSpec


@dataclass(frozen=True, slots=True)
class SourceSnapshot:
    """源码快照，记录落盘位置与内容摘要。"""
    root: Path
    digest: str
    file_count: int


@dataclass(frozen=True, slots=True)
class BuildArtifact:
    """构建产物描述，创建后只读。"""
    source_root: Path
    output_path: Path
    profile: BuildProfile
    target: str | None
    sha256: str


@dataclass(frozen=True, slots=True)
class HarnessSpec:
    """外部校验工具配置。"""
    executable: str
    working_directory: Path
    timeout_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class HarnessInvocation:
    """单次校验调用参数，调用结束即丢弃。"""
    executable: str
    working_directory: Path
    search_path: str
    artifact_path: Path

    @property
    def argv(self) -> list[str]:
        return [self.executable, str(self.artifact_path)]


@dataclass(frozen=True, slots=True)
class VerificationReport:
    """校验结果：退出码与原样捕获的输出流。"""
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: float = 0.0

    @property
    def passed(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class RegistrySnapshot:
    """工具链注册表状态快照，用于幂等性比较。"""
    channels: frozenset[str] = frozenset()
    targets: frozenset[tuple[str, str]] = frozenset()
    components: frozenset[tuple[str, str]] = frozenset()
    tools: dict[str, str | None] = field(default_factory=dict)
