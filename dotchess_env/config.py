"""全局配置加载模块：从环境变量构建流水线运行参数并提供缓存访问。"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _csv_to_list(value: str) -> list[str]:
    """将逗号分隔字符串转换为去空白列表。"""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """流水线运行配置对象，从环境变量读取并提供类型化访问。"""
    model_config = SettingsConfigDict(
        env_prefix="DOTCHESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = "dotchess-env"
    recipe: str = "perft"

    # 环境内固定的项目根目录；构建与校验都以此为工作目录。
    project_root: Path = Field(default=Path("/workspaces/dot_chess"))
    source_root: Path = Field(default=Path("."))
    aux_bin_dir: Path = Field(default=Path("/usr/local/cargo/bin"))

    toolchain_channel: str = "nightly"
    build_profile: str = "release"
    build_target: str | None = None
    artifact_name: str = "perft"
    build_bin: str | None = "perft"

    harness_executable: str = "perftree"

    # 仅在构建镜像时读取一次，环境生命周期内不可变。
    contract_version: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CONTRACT_VERSION", "DOTCHESS_CONTRACT_VERSION"),
    )
    devcontainer_variant: str = "bookworm"

    mirror_url: str = "https://index.crates.io/config.json"
    mirror_probe_enabled: bool = True
    mirror_timeout_seconds: float = 10.0

    tool_install_workers: int = Field(default=4, ge=1, le=32)
    provision_timeout_seconds: float | None = None
    build_timeout_seconds: float | None = None
    verify_timeout_seconds: float | None = None

    log_dir: Path = Field(default=Path("./logs"))
    log_level: str = "INFO"
    log_debug_modules: str = ""
    log_max_bytes: int = 10 * 1024 * 1024
    log_backup_count: int = 5
    log_payload_preview_chars: int = 2000

    def log_debug_modules_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_modules)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """构建并缓存 Settings，同时把相对路径固定到当前工作目录。"""
    settings = Settings()
    # 相对路径统一按当前工作目录解析，避免不同启动方式下语义漂移。
    if not settings.source_root.is_absolute():
        settings.source_root = (Path.cwd() / settings.source_root).resolve()
    if not settings.log_dir.is_absolute():
        settings.log_dir = (Path.cwd() / settings.log_dir).resolve()
    return settings
