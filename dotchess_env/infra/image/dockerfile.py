"""镜像渲染：把配方渲染成 Dockerfile 与容器创建后执行的工具链脚本。"""

from __future__ import annotations

import shlex
from pathlib import Path

from dotchess_env.domain.models import ContainerImageSpec, Recipe, ToolchainSpec


class ImageSpecError(ValueError):
    """镜像声明不合法。"""


def package_suite(package: str) -> str | None:
    """`binaryen/testing` 形式的包名指向 testing 套件，普通包名返回 None。"""
    if "/" not in package:
        return None
    return package.split("/", 1)[1] or None


def validate_image_spec(image: ContainerImageSpec) -> None:
    """校验镜像声明：引用了套件的包必须有对应 apt 源先登记。"""
    if not image.base_image.strip():
        raise ImageSpecError("base image is required")
    registered = image.registered_suites()
    for package in image.packages:
        suite = package_suite(package)
        if suite is not None and suite not in registered:
            raise ImageSpecError(f"package {package!r} references suite {suite!r} with no registered source")
    seen: set[str] = set()
    for package in image.packages:
        if package in seen:
            raise ImageSpecError(f"duplicate package: {package}")
        seen.add(package)


def render_dockerfile(image: ContainerImageSpec) -> str:
    """渲染 Dockerfile，apt 源总在安装软件包之前写入。"""
    validate_image_spec(image)
    lines: list[str] = []
    # FROM 之前声明的 ARG 只对 FROM 可见，之后需要再次声明。
    for arg in image.build_args:
        lines.append(f"ARG {arg}")
    if image.build_args:
        lines.append("")
    lines.append(f"FROM {image.base_image}")
    lines.append("")
    for arg in image.build_args:
        lines.append(f"ARG {arg}")
    for key, value in image.env:
        lines.append(f"ENV {key}={value}")
    if image.build_args or image.env:
        lines.append("")
    for source in image.sources:
        lines.append(f"RUN echo {shlex.quote(source.line())} >> /etc/apt/sources.list")
    if image.sources:
        lines.append("")

    plain = [item for item in image.packages if package_suite(item) is None]
    pinned = [item for item in image.packages if package_suite(item) is not None]
    if plain or pinned:
        steps = ["apt-get update", "export DEBIAN_FRONTEND=noninteractive"]
        if plain:
            steps.append("apt-get install -y " + " ".join(plain))
        if pinned:
            steps.append("apt-get install -y " + " ".join(pinned))
        steps.append("rm -rf /var/lib/apt/lists/*")
        lines.append("RUN " + " \\\n  && ".join(steps))
    return "\n".join(lines).rstrip() + "\n"


def render_provision_script(toolchain: ToolchainSpec) -> str:
    """渲染工具链安装脚本，步骤与 ToolchainProvisioner 一致。"""
    channel = shlex.quote(toolchain.channel)
    lines = ["#!/bin/sh", "set -eu", "", f"rustup toolchain install {channel}"]
    for target in toolchain.targets:
        lines.append(f"rustup target add {shlex.quote(target)} --toolchain {channel}")
    for component in toolchain.components:
        lines.append(f"rustup component add {shlex.quote(component)} --toolchain {channel}")
    if toolchain.tools:
        lines.append("")
    for tool in toolchain.tools:
        lines.append(" ".join(["cargo", *(shlex.quote(arg) for arg in tool.install_args())]))
    return "\n".join(lines) + "\n"


def write_recipe(recipe: Recipe, output_dir: Path) -> list[Path]:
    """把配方的 Dockerfile 与安装脚本写入目录，返回写出的文件。"""
    output_dir.mkdir(parents=True, exist_ok=True)
    dockerfile = output_dir / "Dockerfile"
    dockerfile.write_text(render_dockerfile(recipe.image), encoding="utf-8")
    script = output_dir / "provision.sh"
    script.write_text(render_provision_script(recipe.toolchain), encoding="utf-8")
    script.chmod(0o755)
    return [dockerfile, script]
