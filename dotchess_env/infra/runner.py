"""命令执行抽象：真实子进程执行器与可编排的录制执行器。"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class CommandNotFoundError(RuntimeError):
    """可执行文件不存在。"""

    def __init__(self, argv: Sequence[str]) -> None:
        super().__init__(f"executable not found: {argv[0]}")
        self.argv = list(argv)


class CommandTimeoutError(RuntimeError):
    """命令超过超时时间被终止。"""

    def __init__(self, argv: Sequence[str], timeout_seconds: float) -> None:
        super().__init__(f"command timed out after {timeout_seconds}s: {' '.join(argv)}")
        self.argv = list(argv)
        self.timeout_seconds = timeout_seconds


@dataclass(frozen=True, slots=True)
class CommandResult:
    """一次命令执行的结果。"""
    argv: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def diagnostic(self) -> str:
        """返回用于错误报告的输出文本，优先 stderr。"""
        return (self.stderr or self.stdout).strip()


class CommandRunner(Protocol):
    """阻塞式命令执行能力接口。"""

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult: ...


class SubprocessRunner:
    """基于 subprocess 的真实执行器，捕获完整输出后返回。"""

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        command = [str(item) for item in argv]
        started = time.perf_counter()
        logger.debug(
            "command started",
            extra={"event": "command.started", "op": command[0], "payload_preview": command},
        )
        try:
            completed = subprocess.run(
                command,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                # perftree 等工具会读 stdin 交互，这里一律不接终端。
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CommandNotFoundError(command) from exc
        except subprocess.TimeoutExpired as exc:
            # subprocess.run 在超时时已经 kill 子进程。
            raise CommandTimeoutError(command, float(timeout or 0)) from exc
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "command finished",
            extra={
                "event": "command.finished",
                "op": command[0],
                "duration_ms": duration_ms,
                "status_code": completed.returncode,
                "payload_preview": command,
            },
        )
        return CommandResult(
            argv=tuple(command),
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration_ms=duration_ms,
        )


@dataclass(slots=True)
class RecordedCall:
    """录制执行器记下的一次调用。"""
    argv: tuple[str, ...]
    cwd: Path | None
    env: dict[str, str] | None
    timeout: float | None


@dataclass(slots=True)
class _Rule:
    prefix: tuple[str, ...]
    result: CommandResult | None
    error: Exception | None
    remaining: int | None


@dataclass(slots=True)
class RecordingRunner:
    """按 argv 前缀返回预置结果的执行器，并记录全部调用。

    未匹配任何规则的命令返回 `default_exit_code`（默认 0）的空结果。
    规则按注册顺序倒序匹配，后注册的优先，便于在测试里覆盖默认行为。
    """
    default_exit_code: int = 0
    calls: list[RecordedCall] = field(default_factory=list)
    _rules: list[_Rule] = field(default_factory=list, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def respond(
        self,
        prefix: Sequence[str],
        *,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        times: int | None = None,
    ) -> "RecordingRunner":
        result = CommandResult(argv=tuple(prefix), exit_code=exit_code, stdout=stdout, stderr=stderr)
        self._rules.append(_Rule(tuple(prefix), result, None, times))
        return self

    def fail_with(self, prefix: Sequence[str], error: Exception, *, times: int | None = None) -> "RecordingRunner":
        self._rules.append(_Rule(tuple(prefix), None, error, times))
        return self

    def missing(self, executable: str) -> "RecordingRunner":
        return self.fail_with([executable], CommandNotFoundError([executable]))

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        command = tuple(str(item) for item in argv)
        with self._lock:
            self.calls.append(
                RecordedCall(argv=command, cwd=cwd, env=dict(env) if env is not None else None, timeout=timeout)
            )
            rule = self._match(command)
        if rule is None:
            return CommandResult(argv=command, exit_code=self.default_exit_code)
        if rule.error is not None:
            raise rule.error
        assert rule.result is not None
        return CommandResult(
            argv=command,
            exit_code=rule.result.exit_code,
            stdout=rule.result.stdout,
            stderr=rule.result.stderr,
        )

    def _match(self, command: tuple[str, ...]) -> _Rule | None:
        for rule in reversed(self._rules):
            if command[: len(rule.prefix)] != rule.prefix:
                continue
            if rule.remaining is not None:
                if rule.remaining <= 0:
                    continue
                rule.remaining -= 1
            return rule
        return None

    def commands(self, executable: str | None = None) -> list[tuple[str, ...]]:
        """返回已记录的 argv 列表，可按可执行文件过滤。"""
        return [call.argv for call in self.calls if executable is None or call.argv[0] == executable]
