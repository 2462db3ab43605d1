"""依赖容器模块，负责单例化创建执行器、注册表与各阶段服务对象。"""

from __future__ import annotations

from functools import lru_cache

from dotchess_env.application.builder import BuildOrchestrator
from dotchess_env.application.harness import VerificationHarness
from dotchess_env.application.pipeline import Pipeline
from dotchess_env.application.provisioner import ToolchainProvisioner
from dotchess_env.config import get_settings
from dotchess_env.domain.models import HarnessSpec
from dotchess_env.domain.recipes import RecipeRegistry
from dotchess_env.infra.runner import CommandRunner, SubprocessRunner
from dotchess_env.infra.storage.workspace import WorkspaceManager
from dotchess_env.infra.toolchain.mirror import MirrorProbe
from dotchess_env.infra.toolchain.registry import RustupToolchainRegistry, ToolchainRegistry


@lru_cache(maxsize=1)
def get_runner() -> CommandRunner:
    """获取命令执行器单例。"""
    return SubprocessRunner()


@lru_cache(maxsize=1)
def get_recipe_registry() -> RecipeRegistry:
    """获取配方注册中心单例，cargo-contract 版本在此刻定格。"""
    return RecipeRegistry(contract_version=get_settings().contract_version)


@lru_cache(maxsize=1)
def get_toolchain_registry() -> ToolchainRegistry:
    """获取工具链注册表单例。"""
    return RustupToolchainRegistry(get_runner())


@lru_cache(maxsize=1)
def get_mirror_probe() -> MirrorProbe | None:
    """获取 crates 镜像探测器单例；配置关闭时返回 None。"""
    settings = get_settings()
    if not settings.mirror_probe_enabled:
        return None
    return MirrorProbe(settings.mirror_url, timeout_seconds=settings.mirror_timeout_seconds)


@lru_cache(maxsize=1)
def get_workspace_manager() -> WorkspaceManager:
    return WorkspaceManager(get_settings().project_root)


@lru_cache(maxsize=1)
def get_provisioner() -> ToolchainProvisioner:
    settings = get_settings()
    return ToolchainProvisioner(
        registry=get_toolchain_registry(),
        mirror_probe=get_mirror_probe(),
        max_workers=settings.tool_install_workers,
        timeout_seconds=settings.provision_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_builder() -> BuildOrchestrator:
    settings = get_settings()
    return BuildOrchestrator(
        runner=get_runner(),
        workspace_manager=get_workspace_manager(),
        aux_bin_dir=settings.aux_bin_dir,
        artifact_name=settings.artifact_name,
        bin_name=settings.build_bin,
        timeout_seconds=settings.build_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_harness() -> VerificationHarness:
    return VerificationHarness(runner=get_runner(), aux_bin_dir=get_settings().aux_bin_dir)


def get_harness_spec() -> HarnessSpec:
    settings = get_settings()
    return HarnessSpec(
        executable=settings.harness_executable,
        working_directory=settings.project_root,
        timeout_seconds=settings.verify_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_pipeline() -> Pipeline:
    return Pipeline(provisioner=get_provisioner(), builder=get_builder(), harness=get_harness())


def shutdown_container_resources() -> None:
    """关闭共享 HTTP 客户端并清理依赖容器缓存。"""
    if get_mirror_probe.cache_info().currsize:
        probe = get_mirror_probe()
        if probe is not None:
            probe.close()

    # 按依赖顺序清理缓存，确保后续调用可重新构建全新实例。
    for provider in (
        get_pipeline,
        get_harness,
        get_builder,
        get_provisioner,
        get_workspace_manager,
        get_mirror_probe,
        get_toolchain_registry,
        get_recipe_registry,
        get_runner,
    ):
        provider.cache_clear()
