"""命令行入口：provision / build / verify / run / render-image。"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Sequence

from dotchess_env.application.container import (
    get_builder,
    get_harness,
    get_harness_spec,
    get_pipeline,
    get_provisioner,
    get_recipe_registry,
    shutdown_container_resources,
)
from dotchess_env.config import Settings, get_settings
from dotchess_env.domain.enums import BuildProfile, ExitCode, Stage
from dotchess_env.domain.errors import PipelineError, VerificationFailed
from dotchess_env.domain.models import VerificationReport
from dotchess_env.infra.image.dockerfile import write_recipe
from dotchess_env.infra.logging.context import bind_log_context
from dotchess_env.infra.logging.setup import configure_logging, shutdown_logging


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dotchess-env", description="Provision, build and perft-verify dot_chess.")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_recipe(cmd: argparse.ArgumentParser) -> None:
        cmd.add_argument(
            "--recipe",
            choices=get_recipe_registry().names(),
            default=settings.recipe,
            help="environment recipe name",
        )

    def add_build(cmd: argparse.ArgumentParser) -> None:
        cmd.add_argument("--source", type=Path, default=settings.source_root, help="source tree to snapshot")
        cmd.add_argument(
            "--profile",
            choices=[item.value for item in BuildProfile],
            default=settings.build_profile,
        )
        cmd.add_argument("--target", default=settings.build_target, help="compilation target triple")

    run_cmd = sub.add_parser("run", help="provision, build and verify in one go")
    add_recipe(run_cmd)
    add_build(run_cmd)

    provision_cmd = sub.add_parser("provision", help="install the recipe's toolchain")
    add_recipe(provision_cmd)

    build_cmd = sub.add_parser("build", help="build the artifact")
    add_build(build_cmd)
    build_cmd.add_argument("--channel", default=settings.toolchain_channel)

    verify_cmd = sub.add_parser("verify", help="run the verification tool against an artifact")
    verify_cmd.add_argument("artifact", type=Path)

    render_cmd = sub.add_parser("render-image", help="write Dockerfile and provision.sh for a recipe")
    add_recipe(render_cmd)
    render_cmd.add_argument("--out", type=Path, required=True)
    return parser


def _print_report(report: VerificationReport) -> None:
    if report.stdout:
        sys.stdout.write(report.stdout)
    if report.stderr:
        sys.stderr.write(report.stderr)


def _report_failure(error: PipelineError) -> int:
    if isinstance(error, VerificationFailed):
        _print_report(error.report)
    label = error.stage.value if error.stage is not None else "pipeline"
    sys.stderr.write(f"[{label}] {error}\n")
    return int(error.exit_code)


def _cmd_run(args: argparse.Namespace) -> int:
    recipe = get_recipe_registry().get(args.recipe)
    run = get_pipeline().run(
        toolchain=recipe.toolchain,
        source=args.source,
        profile=BuildProfile(args.profile),
        harness=get_harness_spec(),
        target=args.target,
    )
    if run.failure is not None:
        return _report_failure(run.failure)
    assert run.report is not None
    _print_report(run.report)
    return run.exit_code


def _cmd_provision(args: argparse.Namespace) -> int:
    recipe = get_recipe_registry().get(args.recipe)
    with bind_log_context(stage=Stage.provision.value):
        get_provisioner().provision(recipe.toolchain)
    return int(ExitCode.ok)


def _cmd_build(args: argparse.Namespace) -> int:
    with bind_log_context(stage=Stage.build.value):
        artifact = get_builder().build(args.source, args.channel, BuildProfile(args.profile), args.target)
    sys.stdout.write(f"{artifact.output_path}\n")
    return int(ExitCode.ok)


def _cmd_verify(args: argparse.Namespace) -> int:
    with bind_log_context(stage=Stage.build.value):
        artifact = get_builder().adopt(args.artifact)
    with bind_log_context(stage=Stage.verify.value):
        report = get_harness().verify(artifact, get_harness_spec())
    _print_report(report)
    return report.exit_code


def _cmd_render_image(args: argparse.Namespace) -> int:
    recipe = get_recipe_registry().get(args.recipe)
    for path in write_recipe(recipe, args.out):
        sys.stdout.write(f"{path}\n")
    return int(ExitCode.ok)


_COMMANDS = {
    "run": _cmd_run,
    "provision": _cmd_provision,
    "build": _cmd_build,
    "verify": _cmd_verify,
    "render-image": _cmd_render_image,
}


def main(argv: Sequence[str] | None = None) -> int:
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    configure_logging(settings, process_role=args.command)
    try:
        return _COMMANDS[args.command](args)
    except PipelineError as exc:
        return _report_failure(exc)
    except KeyboardInterrupt:
        sys.stderr.write("cancelled by operator\n")
        return int(ExitCode.cancelled)
    finally:
        shutdown_container_resources()
        shutdown_logging()


if __name__ == "__main__":
    sys.exit(main())
