"""命令行测试：退出码与各阶段结果保持一致。"""

from __future__ import annotations

from pathlib import Path

import pytest

from dotchess_env import cli
from dotchess_env.application.container import shutdown_container_resources
from dotchess_env.config import get_settings
from dotchess_env.domain.enums import ExitCode


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, project_root: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DOTCHESS_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("DOTCHESS_PROJECT_ROOT", str(project_root))
    monkeypatch.setenv("DOTCHESS_MIRROR_PROBE_ENABLED", "false")
    get_settings.cache_clear()
    shutdown_container_resources()
    yield
    get_settings.cache_clear()
    shutdown_container_resources()


def test_render_image_writes_files(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["render-image", "--recipe", "devcontainer", "--out", str(tmp_path / "out")])

    assert code == 0
    assert (tmp_path / "out" / "Dockerfile").exists()
    assert "provision.sh" in capsys.readouterr().out


def test_unknown_recipe_is_rejected_by_parser() -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["provision", "--recipe", "production"])

    assert exc_info.value.code == 2


def test_run_exit_code_mirrors_successful_harness(
    monkeypatch: pytest.MonkeyPatch, make_pipeline, registry, source_tree: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli, "get_pipeline", lambda: make_pipeline(registry))

    code = cli.main(["run", "--source", str(source_tree)])

    assert code == 0
    assert "400" in capsys.readouterr().out


def test_run_exit_code_mirrors_failing_stage(
    monkeypatch: pytest.MonkeyPatch, make_pipeline, registry, runner, source_tree: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    runner.respond(["cargo"], exit_code=101, stderr="error: could not compile `dot_chess`")
    monkeypatch.setattr(cli, "get_pipeline", lambda: make_pipeline(registry))

    code = cli.main(["run", "--source", str(source_tree)])

    assert code == ExitCode.build_failed
    assert "[build]" in capsys.readouterr().err


def test_verify_reports_missing_artifact(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli.main(["verify", str(tmp_path / "nope")])

    assert code == ExitCode.build_failed
    assert "[build] artifact not found" in capsys.readouterr().err


def test_verify_finds_tool_installed_in_aux_bin_dir(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    project_root: Path,
    aux_bin_dir: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """单独执行 verify 时，cargo install 目录里的 perftree 也能按名称找到。"""
    aux_bin_dir.mkdir(parents=True)
    tool = aux_bin_dir / "perftree"
    tool.write_text('#!/bin/sh\necho "checked $1"\necho 400\n', encoding="utf-8")
    tool.chmod(0o755)
    project_root.mkdir(parents=True)
    artifact = tmp_path / "perft"
    artifact.write_bytes(b"engine")
    monkeypatch.setenv("DOTCHESS_AUX_BIN_DIR", str(aux_bin_dir))
    monkeypatch.setenv("PATH", "/usr/bin:/bin")
    get_settings.cache_clear()

    code = cli.main(["verify", str(artifact)])

    out = capsys.readouterr().out
    assert code == 0
    assert f"checked {artifact.resolve()}" in out
    assert "400" in out


def test_run_with_missing_source_reports_build_stage(
    monkeypatch: pytest.MonkeyPatch, make_pipeline, registry, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(cli, "get_pipeline", lambda: make_pipeline(registry))

    code = cli.main(["run", "--source", str(tmp_path / "missing")])

    assert code == ExitCode.build_failed
    assert "[build] cannot snapshot" in capsys.readouterr().err
