"""工具链注册表：抽象已安装 channel/target/组件/工具的查询与安装。"""

from __future__ import annotations

import logging
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from dotchess_env.domain.models import AuxiliaryTool, RegistrySnapshot
from dotchess_env.infra.runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

_INSTALLED_MARKER = "(installed)"
_CARGO_LIST_RE = re.compile(r"^(?P<name>[A-Za-z0-9_.-]+) v(?P<version>[^\s:]+)")


class RegistryCommandError(RuntimeError):
    """rustup/cargo 命令返回非零退出码。"""

    def __init__(self, result: CommandResult) -> None:
        super().__init__(f"{' '.join(result.argv)} exited with {result.exit_code}: {result.diagnostic()}")
        self.result = result


class ToolchainRegistry(ABC):
    """工具链注册表抽象基类，进程内共享，生命周期等同环境本身。

    同一条目（同名 channel/target/组件/工具）的并发安装通过 `entry_lock` 串行化。
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def entry_lock(self, kind: str, name: str) -> threading.Lock:
        """返回某个注册表条目的互斥锁。"""
        key = (kind, name)
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @abstractmethod
    def installed_channels(self) -> set[str]:
        """已安装的 channel 名称。"""

    @abstractmethod
    def available_targets(self, channel: str) -> set[str]:
        """该 channel 下分发方提供的全部 target。"""

    @abstractmethod
    def installed_targets(self, channel: str) -> set[str]:
        """该 channel 下已安装的 target。"""

    @abstractmethod
    def available_components(self, channel: str) -> set[str]:
        """该 channel 下可安装的组件。"""

    @abstractmethod
    def installed_components(self, channel: str) -> set[str]:
        """该 channel 下已安装的组件。"""

    @abstractmethod
    def installed_tools(self) -> dict[str, str | None]:
        """已安装的辅助工具及其版本。"""

    @abstractmethod
    def install_channel(self, channel: str, *, timeout: float | None = None) -> None: ...

    @abstractmethod
    def add_target(self, channel: str, target: str, *, timeout: float | None = None) -> None: ...

    @abstractmethod
    def add_component(self, channel: str, component: str, *, timeout: float | None = None) -> None: ...

    @abstractmethod
    def install_tool(self, tool: AuxiliaryTool, *, timeout: float | None = None) -> None: ...

    def has_channel(self, channel: str) -> bool:
        return channel in self.installed_channels()

    def snapshot(self, channels: Sequence[str] = ()) -> RegistrySnapshot:
        """导出当前注册表状态，target/组件只统计给定 channel。"""
        installed = self.installed_channels()
        targets: set[tuple[str, str]] = set()
        components: set[tuple[str, str]] = set()
        for channel in channels:
            if channel not in installed:
                continue
            targets.update((channel, item) for item in self.installed_targets(channel))
            components.update((channel, item) for item in self.installed_components(channel))
        return RegistrySnapshot(
            channels=frozenset(installed),
            targets=frozenset(targets),
            components=frozenset(components),
            tools=dict(self.installed_tools()),
        )


def _channel_matches(line: str, channel: str) -> bool:
    name = line.split()[0] if line.split() else ""
    return name == channel or name.startswith(f"{channel}-")


def _parse_marked_list(text: str) -> tuple[set[str], set[str]]:
    """解析 rustup `target list`/`component list` 输出，返回 (全部, 已安装)。"""
    available: set[str] = set()
    installed: set[str] = set()
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        name = line.split()[0]
        available.add(name)
        if _INSTALLED_MARKER in line:
            installed.add(name)
    return available, installed


def component_matches(listed: str, component: str) -> bool:
    """rustup 会给宿主相关组件加 target 后缀，例如 rustfmt-x86_64-unknown-linux-gnu。"""
    return listed == component or listed.startswith(f"{component}-")


def parse_cargo_install_list(text: str) -> dict[str, str | None]:
    """解析 `cargo install --list` 输出，缩进行是二进制名，忽略。"""
    tools: dict[str, str | None] = {}
    for line in text.splitlines():
        if not line or line[0].isspace():
            continue
        match = _CARGO_LIST_RE.match(line)
        if match:
            tools[match.group("name")] = match.group("version")
    return tools


class RustupToolchainRegistry(ToolchainRegistry):
    """基于 rustup/cargo 命令行的真实注册表实现。"""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        rustup: str = "rustup",
        cargo: str = "cargo",
        cwd: Path | None = None,
    ) -> None:
        super().__init__()
        self._runner = runner
        self._rustup = rustup
        self._cargo = cargo
        self._cwd = cwd

    def _run(self, argv: list[str], *, timeout: float | None = None) -> CommandResult:
        result = self._runner.run(argv, cwd=self._cwd, timeout=timeout)
        if not result.ok:
            raise RegistryCommandError(result)
        return result

    def installed_channels(self) -> set[str]:
        result = self._run([self._rustup, "toolchain", "list"])
        channels: set[str] = set()
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            name = line.split()[0]
            channels.add(name)
            # nightly-x86_64-unknown-linux-gnu 同时登记为 nightly，按 channel 名查询即可命中。
            for channel in ("stable", "beta", "nightly"):
                if _channel_matches(line, channel):
                    channels.add(channel)
        return channels

    def available_targets(self, channel: str) -> set[str]:
        return self._targets(channel)[0]

    def installed_targets(self, channel: str) -> set[str]:
        return self._targets(channel)[1]

    def _targets(self, channel: str) -> tuple[set[str], set[str]]:
        result = self._run([self._rustup, "target", "list", "--toolchain", channel])
        return _parse_marked_list(result.stdout)

    def available_components(self, channel: str) -> set[str]:
        return self._components(channel)[0]

    def installed_components(self, channel: str) -> set[str]:
        return self._components(channel)[1]

    def _components(self, channel: str) -> tuple[set[str], set[str]]:
        result = self._run([self._rustup, "component", "list", "--toolchain", channel])
        return _parse_marked_list(result.stdout)

    def installed_tools(self) -> dict[str, str | None]:
        result = self._run([self._cargo, "install", "--list"])
        return parse_cargo_install_list(result.stdout)

    def install_channel(self, channel: str, *, timeout: float | None = None) -> None:
        self._run([self._rustup, "toolchain", "install", channel], timeout=timeout)

    def add_target(self, channel: str, target: str, *, timeout: float | None = None) -> None:
        self._run([self._rustup, "target", "add", target, "--toolchain", channel], timeout=timeout)

    def add_component(self, channel: str, component: str, *, timeout: float | None = None) -> None:
        self._run([self._rustup, "component", "add", component, "--toolchain", channel], timeout=timeout)

    def install_tool(self, tool: AuxiliaryTool, *, timeout: float | None = None) -> None:
        self._run([self._cargo, *tool.install_args()], timeout=timeout)
