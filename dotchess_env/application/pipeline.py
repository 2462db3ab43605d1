"""流水线编排：provision → build → verify，严格单向推进，任一阶段失败即终止。"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from dotchess_env.application.builder import BuildOrchestrator
from dotchess_env.application.harness import VerificationHarness
from dotchess_env.application.provisioner import ToolchainProvisioner
from dotchess_env.domain.enums import (
    FORWARD_TRANSITIONS,
    TERMINAL_STATES,
    BuildProfile,
    ExitCode,
    PipelineState,
    Stage,
)
from dotchess_env.domain.errors import PipelineCancelled, PipelineError
from dotchess_env.domain.models import BuildArtifact, HarnessSpec, ToolchainSpec, VerificationReport
from dotchess_env.infra.logging.context import bind_log_context

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    pass


@dataclass(slots=True)
class PipelineRun:
    """一次流水线运行的状态记录，运行结束即丢弃。"""
    run_id: str = field(default_factory=lambda: uuid4().hex)
    state: PipelineState = PipelineState.unprovisioned
    failure: PipelineError | None = None
    artifact: BuildArtifact | None = None
    report: VerificationReport | None = None
    transitions: list[tuple[PipelineState, PipelineState]] = field(default_factory=list)

    def advance(self, new_state: PipelineState) -> None:
        if FORWARD_TRANSITIONS.get(self.state) is not new_state:
            raise InvalidTransitionError(f"cannot move from {self.state.value} to {new_state.value}")
        self.transitions.append((self.state, new_state))
        self.state = new_state

    def fail(self, error: PipelineError) -> None:
        if self.state in TERMINAL_STATES:
            raise InvalidTransitionError(f"run already finished in state {self.state.value}")
        self.transitions.append((self.state, PipelineState.failed))
        self.state = PipelineState.failed
        self.failure = error

    @property
    def failed_stage(self) -> Stage | None:
        return self.failure.stage if self.failure is not None else None

    @property
    def exit_code(self) -> int:
        if self.failure is not None:
            return int(self.failure.exit_code)
        if self.report is not None:
            return self.report.exit_code
        return int(ExitCode.ok)


class Pipeline:
    """流水线门面，串联三个阶段；失败后不可恢复，需要从头重新运行。"""

    def __init__(
        self,
        *,
        provisioner: ToolchainProvisioner,
        builder: BuildOrchestrator,
        harness: VerificationHarness,
    ) -> None:
        self._provisioner = provisioner
        self._builder = builder
        self._harness = harness

    def run(
        self,
        *,
        toolchain: ToolchainSpec,
        source: Path,
        profile: BuildProfile,
        harness: HarnessSpec,
        target: str | None = None,
    ) -> PipelineRun:
        """完整执行一次流水线，返回运行记录；退出码见 PipelineRun.exit_code。"""
        run = PipelineRun()
        with bind_log_context(run_id=run.run_id):
            logger.info("pipeline started", extra={"event": "pipeline.started"})

            if not self._stage(run, Stage.provision, lambda: self._provisioner.provision(toolchain)):
                return run
            run.advance(PipelineState.provisioned)

            artifact = self._stage(
                run,
                Stage.build,
                lambda: self._builder.build(source, toolchain.channel, profile, target),
            )
            if artifact is None:
                return run
            run.artifact = artifact
            run.advance(PipelineState.built)

            report = self._stage(run, Stage.verify, lambda: self._harness.verify(artifact, harness))
            if report is None:
                return run
            run.report = report
            run.advance(PipelineState.verified)
            logger.info("pipeline finished", extra={"event": "pipeline.succeeded"})
        return run

    def _stage(self, run: PipelineRun, stage: Stage, action):
        """执行单个阶段；失败时把运行记录置为 failed 并返回 None。"""
        with bind_log_context(stage=stage.value):
            started = time.perf_counter()
            try:
                result = action()
            except PipelineError as exc:
                if exc.stage is None:
                    exc.stage = stage
                self._record_failure(run, exc, started)
                return None
            except KeyboardInterrupt:
                self._record_failure(run, PipelineCancelled(stage), started)
                return None
            except Exception as exc:
                logger.exception(
                    "stage crashed",
                    extra={"event": f"{stage.value}.crashed", "error_type": type(exc).__name__, "error": str(exc)},
                )
                run.fail(PipelineError(str(exc), stage=stage))
                raise
            logger.info(
                "stage finished",
                extra={
                    "event": f"{stage.value}.finished",
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            # provision 阶段没有返回值，用 True 表示成功。
            return True if result is None else result

    @staticmethod
    def _record_failure(run: PipelineRun, error: PipelineError, started: float) -> None:
        run.fail(error)
        logger.error(
            "stage failed",
            extra={
                "event": f"{error.stage.value}.failed",
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "error_type": type(error).__name__,
                "error": str(error),
            },
        )
