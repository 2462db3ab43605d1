"""工具链安装器：安装 channel、编译目标、源码组件与辅助工具，可重复执行。"""

from __future__ import annotations

import contextvars
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from dotchess_env.domain.enums import Stage
from dotchess_env.domain.errors import (
    ComponentUnavailable,
    ProvisionError,
    StageTimeout,
    ToolInstallFailed,
    UnsupportedTarget,
)
from dotchess_env.domain.models import AuxiliaryTool, ToolchainSpec, version_satisfies
from dotchess_env.infra.logging.context import bind_log_context
from dotchess_env.infra.runner import CommandNotFoundError, CommandTimeoutError
from dotchess_env.infra.toolchain.mirror import MirrorProbe, MirrorUnreachableError
from dotchess_env.infra.toolchain.registry import RegistryCommandError, ToolchainRegistry, component_matches

logger = logging.getLogger(__name__)


class ToolchainProvisioner:
    """工具链安装器，所有变更都经由注入的 ToolchainRegistry 完成。"""

    def __init__(
        self,
        *,
        registry: ToolchainRegistry,
        mirror_probe: MirrorProbe | None = None,
        max_workers: int = 4,
        timeout_seconds: float | None = None,
    ) -> None:
        self._registry = registry
        self._mirror_probe = mirror_probe
        self._max_workers = max(1, max_workers)
        self._timeout = timeout_seconds

    def provision(self, spec: ToolchainSpec) -> None:
        """按声明安装工具链；已满足的条目直接跳过，失败即终止。"""
        started = time.perf_counter()
        logger.info(
            "provisioning started",
            extra={
                "event": "provision.started",
                "payload_preview": {
                    "channel": spec.channel,
                    "targets": list(spec.targets),
                    "components": list(spec.components),
                    "tools": [tool.name for tool in spec.tools],
                },
            },
        )
        self._guard(self._ensure_channel, spec.channel)
        missing_targets, missing_components = self._guard(self._plan, spec)

        # 全部校验通过之后才开始安装，校验失败时不留下部分安装结果。
        for target in missing_targets:
            with self._registry.entry_lock("target", f"{spec.channel}/{target}"):
                self._guard(self._registry.add_target, spec.channel, target, timeout=self._timeout)
            logger.info("target added", extra={"event": "provision.target.added", "op": target})
        for component in missing_components:
            with self._registry.entry_lock("component", f"{spec.channel}/{component}"):
                self._guard(self._registry.add_component, spec.channel, component, timeout=self._timeout)
            logger.info("component added", extra={"event": "provision.component.added", "op": component})

        self._install_tools(spec.tools)
        logger.info(
            "provisioning finished",
            extra={
                "event": "provision.succeeded",
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )

    def _ensure_channel(self, channel: str) -> None:
        with self._registry.entry_lock("channel", channel):
            if self._registry.has_channel(channel):
                logger.debug("channel already installed", extra={"event": "provision.channel.present", "op": channel})
                return
            self._registry.install_channel(channel, timeout=self._timeout)
        logger.info("channel installed", extra={"event": "provision.channel.installed", "op": channel})

    def _plan(self, spec: ToolchainSpec) -> tuple[list[str], list[str]]:
        """校验全部 target/组件并返回尚未安装的部分。"""
        missing_targets: list[str] = []
        if spec.targets:
            available = self._registry.available_targets(spec.channel)
            installed = self._registry.installed_targets(spec.channel)
            for target in spec.targets:
                if target not in available:
                    raise UnsupportedTarget(target, spec.channel)
                if target not in installed:
                    missing_targets.append(target)

        missing_components: list[str] = []
        if spec.components:
            available = self._registry.available_components(spec.channel)
            installed = self._registry.installed_components(spec.channel)
            for component in spec.components:
                if not any(component_matches(item, component) for item in available):
                    raise ComponentUnavailable(component, spec.channel)
                if not any(component_matches(item, component) for item in installed):
                    missing_components.append(component)
        return missing_targets, missing_components

    def _install_tools(self, tools: tuple[AuxiliaryTool, ...]) -> None:
        if not tools:
            return
        installed = self._guard(self._registry.installed_tools)
        pending = [tool for tool in tools if not version_satisfies(installed.get(tool.name), tool.version)]
        for tool in tools:
            if tool not in pending:
                logger.debug("tool already installed", extra={"event": "provision.tool.present", "tool": tool.name})
        if not pending:
            return

        if self._mirror_probe is not None:
            try:
                self._mirror_probe.check()
            except MirrorUnreachableError as exc:
                raise ToolInstallFailed(pending[0].name, str(exc)) from exc

        workers = min(self._max_workers, len(pending))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tool-install") as pool:
            # 每个任务复制一份上下文，线程内日志仍带 run_id/stage。
            futures = [
                pool.submit(contextvars.copy_context().run, self._install_tool, tool) for tool in pending
            ]
            try:
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    def _install_tool(self, tool: AuxiliaryTool) -> None:
        with bind_log_context(tool=tool.name), self._registry.entry_lock("tool", tool.name):
            # 拿到锁之后复查，另一个线程可能已装好同一工具。
            current = self._guard(self._registry.installed_tools).get(tool.name)
            if version_satisfies(current, tool.version):
                return
            started = time.perf_counter()
            try:
                self._registry.install_tool(tool, timeout=self._timeout)
            except RegistryCommandError as exc:
                raise ToolInstallFailed(tool.name, exc.result.diagnostic() or str(exc)) from exc
            except CommandNotFoundError as exc:
                raise ToolInstallFailed(tool.name, str(exc)) from exc
            except CommandTimeoutError as exc:
                raise StageTimeout(Stage.provision, exc.argv, exc.timeout_seconds) from exc
            logger.info(
                "tool installed",
                extra={
                    "event": "provision.tool.installed",
                    "op": tool.version or "latest",
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )

    @staticmethod
    def _guard(func, *args, **kwargs):
        """把 rustup/cargo 层异常转换为 ProvisionError 体系。"""
        try:
            return func(*args, **kwargs)
        except RegistryCommandError as exc:
            raise ProvisionError(str(exc)) from exc
        except CommandNotFoundError as exc:
            raise ProvisionError(str(exc)) from exc
        except CommandTimeoutError as exc:
            raise StageTimeout(Stage.provision, exc.argv, exc.timeout_seconds) from exc
