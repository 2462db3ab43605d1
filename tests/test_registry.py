"""rustup 注册表测试：验证命令行输出解析与安装命令拼装。"""

from __future__ import annotations

import pytest

from dotchess_env.application.provisioner import ToolchainProvisioner
from dotchess_env.domain.errors import ToolInstallFailed
from dotchess_env.domain.models import AuxiliaryTool, ToolchainSpec
from dotchess_env.infra.runner import RecordingRunner
from dotchess_env.infra.toolchain.registry import (
    RegistryCommandError,
    RustupToolchainRegistry,
    parse_cargo_install_list,
)

TOOLCHAINS = "stable-x86_64-unknown-linux-gnu (default)\nnightly-x86_64-unknown-linux-gnu\n"
TARGETS = "aarch64-unknown-linux-gnu\nwasm32-unknown-unknown\nx86_64-unknown-linux-gnu (installed)\n"
COMPONENTS = "cargo-x86_64-unknown-linux-gnu (installed)\nrust-src\nrustfmt-x86_64-unknown-linux-gnu (installed)\n"
CARGO_LIST = "cargo-edit v0.12.2:\n    cargo-add\n    cargo-rm\nperftree v0.1.0:\n    perftree\n"


def _runner() -> RecordingRunner:
    return (
        RecordingRunner()
        .respond(["rustup", "toolchain", "list"], stdout=TOOLCHAINS)
        .respond(["rustup", "target", "list"], stdout=TARGETS)
        .respond(["rustup", "component", "list"], stdout=COMPONENTS)
        .respond(["cargo", "install", "--list"], stdout=CARGO_LIST)
    )


def test_channels_are_indexed_by_short_name() -> None:
    registry = RustupToolchainRegistry(_runner())

    channels = registry.installed_channels()

    assert "nightly" in channels
    assert "stable" in channels
    assert "nightly-x86_64-unknown-linux-gnu" in channels
    assert "beta" not in channels


def test_target_and_component_lists_split_available_and_installed() -> None:
    registry = RustupToolchainRegistry(_runner())

    assert "wasm32-unknown-unknown" in registry.available_targets("nightly")
    assert registry.installed_targets("nightly") == {"x86_64-unknown-linux-gnu"}
    assert "rust-src" in registry.available_components("nightly")
    assert "rust-src" not in registry.installed_components("nightly")


def test_parse_cargo_install_list_skips_binary_lines() -> None:
    assert parse_cargo_install_list(CARGO_LIST) == {"cargo-edit": "0.12.2", "perftree": "0.1.0"}


def test_non_zero_rustup_exit_raises_registry_error() -> None:
    runner = RecordingRunner().respond(["rustup", "toolchain", "list"], exit_code=1, stderr="rustup: broken")

    with pytest.raises(RegistryCommandError, match="rustup: broken"):
        RustupToolchainRegistry(runner).installed_channels()


def test_scenario_provisions_contract_toolchain_with_expected_commands() -> None:
    """nightly + wasm32 + rust-src + cargo-contract v1.0 应生成与安装脚本一致的命令。"""
    runner = _runner()
    spec = ToolchainSpec(
        channel="nightly",
        targets=("wasm32-unknown-unknown",),
        components=("rust-src",),
        tools=(AuxiliaryTool("cargo-contract", "v1.0", ("--force", "--locked")),),
    )

    ToolchainProvisioner(registry=RustupToolchainRegistry(runner)).provision(spec)

    mutations = [
        argv
        for argv in runner.commands()
        if argv[1:3] in {("toolchain", "install"), ("target", "add"), ("component", "add")}
        or argv[:3] == ("cargo", "install", "cargo-contract")
    ]
    assert mutations == [
        ("rustup", "target", "add", "wasm32-unknown-unknown", "--toolchain", "nightly"),
        ("rustup", "component", "add", "rust-src", "--toolchain", "nightly"),
        ("cargo", "install", "cargo-contract", "--version", "1.0", "--force", "--locked"),
    ]


def test_cargo_install_failure_carries_compiler_output() -> None:
    runner = _runner().respond(
        ["cargo", "install", "cargo-contract"],
        exit_code=101,
        stderr="error: failed to download from `https://index.crates.io`",
    )
    spec = ToolchainSpec(channel="nightly", tools=(AuxiliaryTool("cargo-contract", "1.0"),))

    with pytest.raises(ToolInstallFailed) as exc_info:
        ToolchainProvisioner(registry=RustupToolchainRegistry(runner)).provision(spec)

    assert "failed to download" in exc_info.value.reason
