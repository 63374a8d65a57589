from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from dotenv import load_dotenv

from .config import PipelineConfig, load_pipeline_config
from .errors import ConfigurationError, GraphError, PhaseError
from .pipeline import BuildPipeline
from .pipeline.steps import describe_steps
from .reports import BuildReporter

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2


def configure_logging(verbose: bool) -> None:
    """Configure root logging based on verbosity level."""
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="nodeimage",
        description="Compile a node from source and package it into a hardened runtime image.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-c", "--config", type=Path, help="Pipeline config file (YAML or JSON).")
    common.add_argument("--git-commit", help="Commit embedded into the binary (default: $GIT_COMMIT).")
    common.add_argument("--build-args", help="Flags forwarded verbatim to cargo (default: $BUILD_ARGS).")
    common.add_argument("--source", type=Path, help="Node source tree used as build context.")

    subparsers = parser.add_subparsers(dest="command", required=True)

    render = subparsers.add_parser("render", parents=[common], help="Write the Dockerfile without building.")
    render.add_argument("-o", "--output", type=Path, help="Output path (default: stdout).")

    subparsers.add_parser("plan", parents=[common], help="Show step batches and their error categories.")

    build = subparsers.add_parser("build", parents=[common], help="Build, verify and tag the image.")
    build.add_argument("--push", action="store_true", default=None, help="Push the published tags.")
    build.add_argument("--report-dir", type=Path, help="Write a JSON build report to this directory.")

    verify = subparsers.add_parser("verify", parents=[common], help="Verify an existing image.")
    verify.add_argument("image", help="Image reference to verify.")

    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> PipelineConfig:
    config = load_pipeline_config(args.config) if args.config else PipelineConfig()
    return config.with_inputs(
        git_commit=args.git_commit,
        build_args=args.build_args,
        source_dir=args.source,
    )


def render_command(pipeline: BuildPipeline, output: Optional[Path]) -> int:
    plan = pipeline.plan()
    if not plan.success:
        for issue in plan.issues:
            logger.error("%s: %s", issue.code, issue.message)
        return EXIT_FAILED

    content = plan.recipe.render()
    if output is None:
        sys.stdout.write(content)
    else:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(content, encoding="utf-8")
        logger.info("Dockerfile written to %s (sha256 %s)", output, plan.recipe.digest)
    return EXIT_OK


def plan_command(pipeline: BuildPipeline) -> int:
    plan = pipeline.plan()
    if not plan.success:
        for issue in plan.issues:
            logger.error("%s: %s", issue.code, issue.message)
        return EXIT_FAILED

    details = describe_steps(pipeline.graph.steps)
    for index, batch in enumerate(plan.recipe.batches, 1):
        print(f"batch {index}:")
        for name in batch:
            info = details[name]
            print(f"  {name:<20} stage={info['stage']:<8} category={info['category']}")
    print(f"phases: {' -> '.join(phase.value for phase in plan.phases)}")
    print(f"artifact: {plan.recipe.artifact.path}")
    print(f"recipe: {plan.recipe.digest}")
    return EXIT_OK


def build_command(pipeline: BuildPipeline, push: Optional[bool], report_dir: Optional[Path]) -> int:
    result = pipeline.run(push=push)
    if report_dir is not None:
        BuildReporter().save_report(result, str(report_dir))

    if result.success:
        for image in result.published_images:
            print(image)
        return EXIT_OK

    logger.error(
        "Build failed (%s); no image was published",
        result.category.value if result.category else "unknown",
    )
    return EXIT_FAILED


def verify_command(pipeline: BuildPipeline, image: str) -> int:
    verification = pipeline.verify(image)
    for check, passed in sorted(verification.checks.items()):
        print(f"{'ok  ' if passed else 'FAIL'} {check}")
    for issue in verification.issues:
        logger.log(logging.ERROR if issue.is_error() else logging.WARNING, "%s: %s", issue.code, issue.message)
    return EXIT_OK if verification.success else EXIT_FAILED


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the nodeimage command."""
    load_dotenv()
    args = parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.verbose)

    try:
        config = load_config(args)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG

    pipeline = BuildPipeline(config)
    try:
        if args.command == "render":
            return render_command(pipeline, args.output)
        if args.command == "plan":
            return plan_command(pipeline)
        if args.command == "build":
            return build_command(pipeline, args.push, args.report_dir)
        return verify_command(pipeline, args.image)
    except (GraphError, PhaseError) as exc:
        logger.error("Invalid step graph: %s", exc)
        return EXIT_CONFIG


if __name__ == "__main__":
    sys.exit(main())
