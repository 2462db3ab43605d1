"""流水线错误分类：每个错误都携带所属阶段与对应退出码。"""

from __future__ import annotations

from pathlib import Path

from dotchess_env.domain.enums import ExitCode, Stage
from dotchess_env.domain.models import VerificationReport


class PipelineError(Exception):
    """流水线错误基类，任何子类都会让本次运行进入 failed 终态。"""
    stage: Stage | None = None
    exit_code: int = 1

    def __init__(self, message: str, *, stage: Stage | None = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class ProvisionError(PipelineError):
    stage = Stage.provision
    exit_code = ExitCode.provision_failed


class UnsupportedTarget(ProvisionError):
    def __init__(self, target: str, channel: str) -> None:
        super().__init__(f"target {target!r} is not offered for toolchain {channel!r}")
        self.target = target
        self.channel = channel


class ComponentUnavailable(ProvisionError):
    def __init__(self, component: str, channel: str) -> None:
        super().__init__(f"component {component!r} is not available for toolchain {channel!r}")
        self.component = component
        self.channel = channel


class ToolInstallFailed(ProvisionError):
    def __init__(self, tool: str, reason: str) -> None:
        super().__init__(f"failed to install {tool}: {reason}")
        self.tool = tool
        self.reason = reason


class BuildError(PipelineError):
    stage = Stage.build
    exit_code = ExitCode.build_failed


class CompileFailed(BuildError):
    def __init__(self, diagnostic: str) -> None:
        super().__init__(f"compilation failed\n{diagnostic}".rstrip())
        self.diagnostic = diagnostic


class SnapshotFailed(BuildError):
    def __init__(self, source: Path, reason: str) -> None:
        super().__init__(f"cannot snapshot {source}: {reason}")
        self.source = source
        self.reason = reason


class ArtifactMissing(BuildError):
    def __init__(self, path: Path) -> None:
        super().__init__(f"artifact not found: {path}")
        self.path = path


class HarnessError(PipelineError):
    stage = Stage.verify


class ToolMissing(HarnessError):
    exit_code = ExitCode.tool_missing

    def __init__(self, executable: str, search_path: str) -> None:
        super().__init__(f"verification tool {executable!r} not found on PATH={search_path}")
        self.executable = executable
        self.search_path = search_path


class VerificationFailed(HarnessError):
    def __init__(self, report: VerificationReport) -> None:
        super().__init__(f"verification failed with exit code {report.exit_code}")
        self.report = report
        # 整体退出码沿用 harness 自身的退出码；被信号终止时按 shell 约定折算为 128+N。
        self.exit_code = report.exit_code if report.exit_code > 0 else 128 - report.exit_code


class StageTimeout(PipelineError):
    exit_code = ExitCode.timeout

    def __init__(self, stage: Stage, command: list[str], timeout_seconds: float) -> None:
        super().__init__(
            f"{stage.value} timed out after {timeout_seconds}s: {' '.join(command)}",
            stage=stage,
        )
        self.command = command
        self.timeout_seconds = timeout_seconds


class PipelineCancelled(PipelineError):
    exit_code = ExitCode.cancelled

    def __init__(self, stage: Stage) -> None:
        super().__init__(f"{stage.value} cancelled by operator", stage=stage)
