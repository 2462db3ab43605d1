"""领域枚举定义：统一流水线状态、阶段名称、构建配置与退出码取值。"""

from __future__ import annotations

from enum import Enum, IntEnum


class PipelineState(str, Enum):
    """流水线生命周期状态枚举，只允许单向前进。"""
    unprovisioned = "unprovisioned"
    provisioned = "provisioned"
    built = "built"
    verified = "verified"
    failed = "failed"


class Stage(str, Enum):
    """流水线阶段名称。"""
    provision = "provision"
    build = "build"
    verify = "verify"


class BuildProfile(str, Enum):
    """cargo 构建配置。"""
    debug = "debug"
    release = "release"


class ExitCode(IntEnum):
    """流水线整体退出码；校验失败时直接沿用 harness 的退出码。"""
    ok = 0
    provision_failed = 10
    build_failed = 20
    timeout = 124
    tool_missing = 127
    cancelled = 130


# 合法的前进路径，failed 可以从任何非终态进入。
FORWARD_TRANSITIONS: dict[PipelineState, PipelineState] = {
    PipelineState.unprovisioned: PipelineState.provisioned,
    PipelineState.provisioned: PipelineState.built,
    PipelineState.built: PipelineState.verified,
}

TERMINAL_STATES = frozenset({PipelineState.verified, PipelineState.failed})
