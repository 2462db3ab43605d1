"""测试公共桩对象：内存版工具链注册表与会落盘产物的 cargo 执行器。"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import pytest

from dotchess_env.application.builder import BuildOrchestrator, artifact_path
from dotchess_env.application.harness import VerificationHarness
from dotchess_env.application.pipeline import Pipeline
from dotchess_env.application.provisioner import ToolchainProvisioner
from dotchess_env.domain.enums import BuildProfile
from dotchess_env.domain.models import AuxiliaryTool, HarnessSpec
from dotchess_env.infra.runner import CommandResult, RecordingRunner
from dotchess_env.infra.storage.workspace import WorkspaceManager
from dotchess_env.infra.toolchain.registry import RegistryCommandError, ToolchainRegistry

WASM = "wasm32-unknown-unknown"
GOOD_ARTIFACT = b"\x7fELF" + b"perft" * 64


class FakeToolchainRegistry(ToolchainRegistry):
    """内存版注册表，记录每一次安装动作。"""

    def __init__(
        self,
        *,
        known_targets: Sequence[str] = (WASM, "x86_64-unknown-linux-gnu"),
        known_components: Sequence[str] = ("rust-src", "rustfmt-x86_64-unknown-linux-gnu"),
        failing_tools: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__()
        self.known_targets = set(known_targets)
        self.known_components = set(known_components)
        self.failing_tools = dict(failing_tools or {})
        self.channels: set[str] = set()
        self.targets: set[tuple[str, str]] = set()
        self.components: set[tuple[str, str]] = set()
        self.tools: dict[str, str | None] = {}
        self.installs: list[tuple[str, str]] = []
        self._mutex = threading.Lock()

    def _record(self, kind: str, name: str) -> None:
        with self._mutex:
            self.installs.append((kind, name))

    def installed_channels(self) -> set[str]:
        return set(self.channels)

    def available_targets(self, channel: str) -> set[str]:
        return set(self.known_targets)

    def installed_targets(self, channel: str) -> set[str]:
        return {target for owner, target in self.targets if owner == channel}

    def available_components(self, channel: str) -> set[str]:
        return set(self.known_components)

    def installed_components(self, channel: str) -> set[str]:
        return {component for owner, component in self.components if owner == channel}

    def installed_tools(self) -> dict[str, str | None]:
        with self._mutex:
            return dict(self.tools)

    def install_channel(self, channel: str, *, timeout: float | None = None) -> None:
        self._record("channel", channel)
        self.channels.add(channel)

    def add_target(self, channel: str, target: str, *, timeout: float | None = None) -> None:
        self._record("target", target)
        self.targets.add((channel, target))

    def add_component(self, channel: str, component: str, *, timeout: float | None = None) -> None:
        self._record("component", component)
        self.components.add((channel, component))

    def install_tool(self, tool: AuxiliaryTool, *, timeout: float | None = None) -> None:
        self._record("tool", tool.name)
        if tool.name in self.failing_tools:
            raise RegistryCommandError(
                CommandResult(
                    argv=("cargo", *tool.install_args()),
                    exit_code=101,
                    stderr=self.failing_tools[tool.name],
                )
            )
        version = tool.version.lstrip("v") if tool.version else "0.1.0"
        with self._mutex:
            self.tools[tool.name] = version


class BuildingRunner(RecordingRunner):
    """cargo build 成功时按约定路径写出产物；perftree 调用交给 perft_check 决定结果。"""

    def __init__(
        self,
        *,
        artifact_bytes: bytes = GOOD_ARTIFACT,
        perft_check: Callable[[Path], CommandResult] | None = None,
    ) -> None:
        super().__init__()
        self.artifact_bytes = artifact_bytes
        self.perft_check = perft_check

    def run(self, argv, *, cwd=None, env=None, timeout=None):
        result = RecordingRunner.run(self, argv, cwd=cwd, env=env, timeout=timeout)
        command = list(argv)
        if command[0] == "cargo" and "build" in command and result.ok:
            profile = BuildProfile.release if "--release" in command else BuildProfile.debug
            target = command[command.index("--target") + 1] if "--target" in command else None
            name = command[command.index("--bin") + 1] if "--bin" in command else "perft"
            output = artifact_path(Path(cwd), profile, target, name)
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(self.artifact_bytes)
        if command[0] == "perftree" and self.perft_check is not None:
            return self.perft_check(Path(command[1]))
        return result


def perft_against_reference(path: Path) -> CommandResult:
    """模拟 perftree：产物内容与参考一致时返回 0，否则报告节点数不一致。"""
    if path.read_bytes() == GOOD_ARTIFACT:
        return CommandResult(argv=("perftree", str(path)), exit_code=0, stdout="e2e4 20\n\n400\n")
    return CommandResult(
        argv=("perftree", str(path)),
        exit_code=1,
        stdout="e2e4 0\n",
        stderr="node count mismatch at depth 2\n",
    )


@pytest.fixture()
def source_tree(tmp_path: Path) -> Path:
    root = tmp_path / "src-tree"
    (root / "src").mkdir(parents=True)
    (root / "Cargo.toml").write_text('[package]\nname = "dot_chess"\nversion = "0.1.0"\n', encoding="utf-8")
    (root / "src" / "perft.rs").write_text("fn main() {}\n", encoding="utf-8")
    return root


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    return tmp_path / "workspaces" / "dot_chess"


@pytest.fixture()
def aux_bin_dir(tmp_path: Path) -> Path:
    return tmp_path / "cargo" / "bin"


@pytest.fixture()
def environ() -> dict[str, str]:
    return {"PATH": "/usr/bin:/bin", "HOME": "/root"}


@pytest.fixture()
def registry() -> FakeToolchainRegistry:
    return FakeToolchainRegistry()


@pytest.fixture()
def runner() -> BuildingRunner:
    return BuildingRunner(perft_check=perft_against_reference)


@pytest.fixture()
def builder(runner: BuildingRunner, project_root: Path, aux_bin_dir: Path, environ: dict[str, str]) -> BuildOrchestrator:
    return BuildOrchestrator(
        runner=runner,
        workspace_manager=WorkspaceManager(project_root),
        aux_bin_dir=aux_bin_dir,
        artifact_name="perft",
        bin_name="perft",
        environ=environ,
    )


@pytest.fixture()
def harness(runner: BuildingRunner, environ: dict[str, str]) -> VerificationHarness:
    return VerificationHarness(runner=runner, environ=environ)


@pytest.fixture()
def harness_spec(project_root: Path) -> HarnessSpec:
    return HarnessSpec(executable="perftree", working_directory=project_root)


@pytest.fixture()
def make_pipeline(builder: BuildOrchestrator, harness: VerificationHarness):
    def _make(registry: ToolchainRegistry, mirror_probe=None) -> Pipeline:
        provisioner = ToolchainProvisioner(registry=registry, mirror_probe=mirror_probe, max_workers=2)
        return Pipeline(provisioner=provisioner, builder=builder, harness=harness)

    return _make
