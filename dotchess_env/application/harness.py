"""校验调用器：以项目根目录为工作目录运行外部 perft 工具，只读引用构建产物。"""

from __future__ import annotations

import logging
import os
from collections.abc import MutableMapping
from pathlib import Path

from dotchess_env.application.builder import extend_search_path
from dotchess_env.domain.enums import Stage
from dotchess_env.domain.errors import StageTimeout, ToolMissing, VerificationFailed
from dotchess_env.domain.models import BuildArtifact, HarnessInvocation, HarnessSpec, VerificationReport
from dotchess_env.infra.runner import CommandNotFoundError, CommandRunner, CommandTimeoutError

logger = logging.getLogger(__name__)


class VerificationHarness:
    """外部校验工具调用器。"""

    def __init__(
        self,
        *,
        runner: CommandRunner,
        aux_bin_dir: Path | None = None,
        environ: MutableMapping[str, str] | None = None,
    ) -> None:
        self._runner = runner
        self._aux_bin_dir = aux_bin_dir
        self._environ = environ if environ is not None else os.environ

    def invocation(self, artifact: BuildArtifact, harness: HarnessSpec) -> HarnessInvocation:
        # 单独执行校验时构建阶段没有跑过，这里同样把辅助工具目录追加到 PATH。
        if self._aux_bin_dir is not None:
            search_path = extend_search_path(self._environ, self._aux_bin_dir)
        else:
            search_path = self._environ.get("PATH", "")
        return HarnessInvocation(
            executable=harness.executable,
            working_directory=harness.working_directory,
            search_path=search_path,
            artifact_path=artifact.output_path,
        )

    def verify(self, artifact: BuildArtifact, harness: HarnessSpec) -> VerificationReport:
        """运行校验工具并返回报告；非零退出抛出 VerificationFailed，不重试。"""
        invocation = self.invocation(artifact, harness)
        env = dict(self._environ)
        env["PATH"] = invocation.search_path
        logger.info(
            "verification started",
            extra={
                "event": "verify.started",
                "op": invocation.executable,
                "payload_preview": {"argv": invocation.argv, "cwd": str(invocation.working_directory)},
            },
        )
        try:
            result = self._runner.run(
                invocation.argv,
                cwd=invocation.working_directory,
                env=env,
                timeout=harness.timeout_seconds,
            )
        except CommandNotFoundError as exc:
            raise ToolMissing(invocation.executable, invocation.search_path) from exc
        except CommandTimeoutError as exc:
            raise StageTimeout(Stage.verify, exc.argv, exc.timeout_seconds) from exc

        report = VerificationReport(
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=result.duration_ms,
        )
        if not report.passed:
            logger.error(
                "verification failed",
                extra={
                    "event": "verify.failed",
                    "op": invocation.executable,
                    "status_code": report.exit_code,
                    "payload_preview": {"stdout": report.stdout, "stderr": report.stderr},
                },
            )
            raise VerificationFailed(report)
        logger.info(
            "verification passed",
            extra={"event": "verify.succeeded", "op": invocation.executable, "duration_ms": report.duration_ms},
        )
        return report
