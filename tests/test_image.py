"""镜像渲染测试：apt 源顺序、套件引用校验与安装脚本内容。"""

from __future__ import annotations

from pathlib import Path

import pytest

from dotchess_env.domain.models import AptSource, ContainerImageSpec
from dotchess_env.domain.recipes import RecipeRegistry
from dotchess_env.infra.image.dockerfile import (
    ImageSpecError,
    render_dockerfile,
    render_provision_script,
    validate_image_spec,
    write_recipe,
)


def test_devcontainer_dockerfile_registers_sources_before_install() -> None:
    recipe = RecipeRegistry(contract_version="1.0.0").get("devcontainer")

    text = render_dockerfile(recipe.image)

    assert text.startswith("ARG VARIANT\nARG CONTRACT_VERSION\n\nFROM mcr.microsoft.com/vscode/devcontainers/rust:${VARIANT}\n")
    assert "ENV CONTRACT_VERSION=${CONTRACT_VERSION}" in text
    source_at = text.index("deb http://ftp.de.debian.org/debian/ testing main contrib non-free")
    install_at = text.index("apt-get install")
    assert source_at < install_at
    assert "apt-get install -y binaryen/testing" in text
    assert "cmake pkg-config libssl-dev" in text


def test_package_referencing_unknown_suite_is_rejected() -> None:
    image = ContainerImageSpec(base_image="debian:bookworm", packages=("binaryen/testing",))

    with pytest.raises(ImageSpecError, match="testing"):
        validate_image_spec(image)


def test_duplicate_packages_are_rejected() -> None:
    image = ContainerImageSpec(
        base_image="debian:bookworm",
        packages=("git", "git"),
        sources=(AptSource("http://deb.debian.org/debian", "bookworm"),),
    )

    with pytest.raises(ImageSpecError, match="duplicate"):
        validate_image_spec(image)


def test_provision_script_mirrors_provisioner_steps() -> None:
    recipe = RecipeRegistry(contract_version="v1.0").get("devcontainer")

    script = render_provision_script(recipe.toolchain)

    assert script.splitlines()[:7] == [
        "#!/bin/sh",
        "set -eu",
        "",
        "rustup toolchain install nightly",
        "rustup target add wasm32-unknown-unknown --toolchain nightly",
        "rustup component add rust-src --toolchain nightly",
        "",
    ]
    assert "cargo install cargo-edit" in script
    assert "cargo install cargo-contract --version 1.0 --force --locked" in script


def test_unpinned_contract_version_installs_latest() -> None:
    recipe = RecipeRegistry(contract_version=None).get("devcontainer")

    script = render_provision_script(recipe.toolchain)

    assert "cargo install cargo-contract --force --locked" in script


def test_write_recipe_outputs_dockerfile_and_script(tmp_path: Path) -> None:
    recipe = RecipeRegistry().get("perft")

    written = write_recipe(recipe, tmp_path / "perft")

    assert [path.name for path in written] == ["Dockerfile", "provision.sh"]
    assert "FROM rust:1-bookworm" in written[0].read_text(encoding="utf-8")
    assert "cargo install perftree --locked" in written[1].read_text(encoding="utf-8")


def test_unknown_recipe_raises_key_error() -> None:
    with pytest.raises(KeyError, match="unknown recipe"):
        RecipeRegistry().get("production")
