"""构建编排器：源码快照落盘、显式指定 channel 调用 cargo 并登记构建产物。"""

from __future__ import annotations

import logging
import os
from collections.abc import MutableMapping
from pathlib import Path

from dotchess_env.domain.enums import BuildProfile, Stage
from dotchess_env.domain.errors import ArtifactMissing, CompileFailed, SnapshotFailed, StageTimeout
from dotchess_env.domain.models import BuildArtifact
from dotchess_env.infra.runner import CommandNotFoundError, CommandRunner, CommandTimeoutError
from dotchess_env.infra.storage.workspace import WorkspaceError, WorkspaceManager, sha256_file

logger = logging.getLogger(__name__)


def artifact_path(project_root: Path, profile: BuildProfile, target: str | None, name: str) -> Path:
    """产物路径只由 (根目录, profile, target, 名称) 决定。"""
    base = project_root / "target"
    if target:
        base = base / target
    return base / profile.value / name


def extend_search_path(environ: MutableMapping[str, str], directory: Path) -> str:
    """把目录追加到 PATH 末尾；已存在时保持不变。"""
    current = environ.get("PATH", "")
    entries = [item for item in current.split(os.pathsep) if item]
    if str(directory) not in entries:
        entries.append(str(directory))
    environ["PATH"] = os.pathsep.join(entries)
    return environ["PATH"]


class BuildOrchestrator:
    """构建编排器，独占 BuildArtifact 的创建与校验。"""

    def __init__(
        self,
        *,
        runner: CommandRunner,
        workspace_manager: WorkspaceManager,
        aux_bin_dir: Path,
        artifact_name: str,
        bin_name: str | None = None,
        cargo: str = "cargo",
        timeout_seconds: float | None = None,
        environ: MutableMapping[str, str] | None = None,
    ) -> None:
        self._runner = runner
        self._workspace_manager = workspace_manager
        self._aux_bin_dir = aux_bin_dir
        self._artifact_name = artifact_name
        self._bin_name = bin_name
        self._cargo = cargo
        self._timeout = timeout_seconds
        # 默认修改进程级环境变量，后续阶段按名称查找辅助工具依赖于此。
        self._environ = environ if environ is not None else os.environ

    @property
    def environ(self) -> MutableMapping[str, str]:
        return self._environ

    def build_command(self, channel: str, profile: BuildProfile, target: str | None) -> list[str]:
        command = [self._cargo, f"+{channel}", "build"]
        if profile is BuildProfile.release:
            command.append("--release")
        if target:
            command.extend(["--target", target])
        if self._bin_name:
            command.extend(["--bin", self._bin_name])
        return command

    def build(
        self,
        source: Path,
        channel: str,
        profile: BuildProfile,
        target: str | None = None,
    ) -> BuildArtifact:
        """构建产物；编译失败抛出 CompileFailed，不做重试。"""
        search_path = extend_search_path(self._environ, self._aux_bin_dir)
        logger.info(
            "search path extended",
            extra={"event": "build.search_path.extended", "op": str(self._aux_bin_dir), "payload_preview": search_path},
        )

        try:
            snapshot = self._workspace_manager.materialize(source)
        except (WorkspaceError, OSError) as exc:
            logger.error(
                "source snapshot failed",
                extra={"event": "build.snapshot.failed", "op": str(source), "error_type": type(exc).__name__, "error": str(exc)},
            )
            raise SnapshotFailed(source, str(exc)) from exc
        command = self.build_command(channel, profile, target)
        try:
            result = self._runner.run(
                command,
                cwd=snapshot.root,
                env=dict(self._environ),
                timeout=self._timeout,
            )
        except CommandNotFoundError as exc:
            raise CompileFailed(str(exc)) from exc
        except CommandTimeoutError as exc:
            raise StageTimeout(Stage.build, exc.argv, exc.timeout_seconds) from exc

        if not result.ok:
            logger.error(
                "compilation failed",
                extra={
                    "event": "build.compile.failed",
                    "op": " ".join(command),
                    "status_code": result.exit_code,
                    "payload_preview": {"stdout": result.stdout, "stderr": result.stderr},
                },
            )
            raise CompileFailed(result.diagnostic())

        output = artifact_path(snapshot.root, profile, target, self._artifact_name)
        if not output.is_file():
            raise CompileFailed(f"cargo exited 0 but no artifact at {output}")

        artifact = BuildArtifact(
            source_root=snapshot.root,
            output_path=output,
            profile=profile,
            target=target,
            sha256=sha256_file(output),
        )
        logger.info(
            "artifact built",
            extra={
                "event": "build.succeeded",
                "op": str(output),
                "duration_ms": result.duration_ms,
                "payload_preview": {"sha256": artifact.sha256, "source_digest": snapshot.digest},
            },
        )
        return artifact

    def adopt(
        self,
        path: Path,
        profile: BuildProfile = BuildProfile.release,
        target: str | None = None,
    ) -> BuildArtifact:
        """登记一个已存在的产物（例如上一次构建的输出），供单独的校验步骤使用。"""
        output = path.resolve()
        if not output.is_file():
            raise ArtifactMissing(output)
        artifact = BuildArtifact(
            source_root=self._workspace_manager.project_root.resolve(),
            output_path=output,
            profile=profile,
            target=target,
            sha256=sha256_file(output),
        )
        logger.info(
            "artifact adopted",
            extra={"event": "build.adopted", "op": str(output), "payload_preview": {"sha256": artifact.sha256}},
        )
        return artifact
