"""环境配方注册中心：开发容器与 perft 校验容器共用同一套安装流程，只在数据上区分。"""

from __future__ import annotations

from dotchess_env.domain.models import AptSource, AuxiliaryTool, ContainerImageSpec, Recipe, ToolchainSpec

WASM_TARGET = "wasm32-unknown-unknown"

DEVCONTAINER_PACKAGES = (
    "cmake",
    "pkg-config",
    "libssl-dev",
    "git",
    "build-essential",
    "clang",
    "libclang-dev",
    "gcc",
    "curl",
    "vim",
    "binaryen/testing",
)

DEBIAN_TESTING = AptSource(
    uri="http://ftp.de.debian.org/debian/",
    suite="testing",
    sections=("main", "contrib", "non-free"),
)


def devcontainer_recipe(contract_version: str | None) -> Recipe:
    """交互式开发容器：ink! 合约工具链 + wasm 目标。"""
    return Recipe(
        name="devcontainer",
        description="interactive development container for the ink! contract",
        image=ContainerImageSpec(
            base_image="mcr.microsoft.com/vscode/devcontainers/rust:${VARIANT}",
            packages=DEVCONTAINER_PACKAGES,
            sources=(DEBIAN_TESTING,),
            build_args=("VARIANT", "CONTRACT_VERSION"),
            env=(("CONTRACT_VERSION", "${CONTRACT_VERSION}"),),
        ),
        toolchain=ToolchainSpec(
            channel="nightly",
            targets=(WASM_TARGET,),
            components=("rust-src",),
            tools=(
                AuxiliaryTool("cargo-edit"),
                AuxiliaryTool("cargo-contract", contract_version, ("--force", "--locked")),
            ),
        ),
    )


def perft_recipe(contract_version: str | None) -> Recipe:
    """非交互 perft 校验容器：构建 perft 二进制并交给 perftree 比对 stockfish 结果。"""
    return Recipe(
        name="perft",
        description="non-interactive container that builds the engine and runs perftree",
        image=ContainerImageSpec(
            base_image="rust:1-bookworm",
            packages=("git", "build-essential", "stockfish"),
        ),
        toolchain=ToolchainSpec(
            channel="nightly",
            targets=(WASM_TARGET,),
            components=("rust-src",),
            tools=(AuxiliaryTool("perftree", None, ("--locked",)),),
        ),
    )


class RecipeRegistry:
    """配方注册中心，按名称返回环境配方。"""

    def __init__(self, contract_version: str | None = None) -> None:
        self._recipes: dict[str, Recipe] = {}
        self.register(devcontainer_recipe(contract_version))
        self.register(perft_recipe(contract_version))

    def register(self, recipe: Recipe) -> None:
        self._recipes[recipe.name] = recipe

    def get(self, name: str) -> Recipe:
        try:
            return self._recipes[name]
        except KeyError as exc:
            raise KeyError(f"unknown recipe: {name}") from exc

    def names(self) -> list[str]:
        return sorted(self._recipes)
