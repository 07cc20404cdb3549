# src/main.py — v2
"""CLI entry point: forge and verify commands.

Usage:
    dreamforge forge "<concept>" [-o DIR] [--refine TEXT ...] [options]
    dreamforge verify <manifest.json> [--spec FILE --build FILE]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from dreamforge.version import __version__

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    _setup_logging(args.verbose, args.log_format)

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as exc:
        logger.error("Fatal error: %s", exc, exc_info=args.verbose)
        return 1


def _build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="dreamforge",
        description=f"DreamForge v{__version__} - concept to playable prototype",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-format", choices=("text", "json"), default=None,
        help="Log output format (default: from settings)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # --- forge ---
    p_forge = subparsers.add_parser(
        "forge", help="Draft, build and optionally refine a prototype",
    )
    p_forge.add_argument("concept", help="Free-form concept description")
    p_forge.add_argument(
        "-o", "--output", type=Path, default=Path("./output"),
        help="Output directory (default: ./output)",
    )
    p_forge.add_argument(
        "--refine", action="append", default=[], metavar="TEXT",
        help="Refinement instruction applied after the build (repeatable)",
    )
    p_forge.add_argument("--seed", default=None, help="Seed recorded in the manifest")
    p_forge.add_argument("--platform", default=None, help="Target platform label")
    p_forge.add_argument("--quality", default=None, help="Quality tier label")
    p_forge.add_argument("--provider", default=None, help="Generation provider")
    p_forge.add_argument("--model", default=None, help="Model name for the provider")
    p_forge.set_defaults(func=_cmd_forge)

    # --- verify ---
    p_verify = subparsers.add_parser(
        "verify", help="Check a manifest and, optionally, the files it signs",
    )
    p_verify.add_argument("manifest", type=Path, help="Path to manifest.json")
    p_verify.add_argument("--spec", type=Path, default=None, help="Path to spec.json")
    p_verify.add_argument("--build", type=Path, default=None, help="Path to build.html")
    p_verify.set_defaults(func=_cmd_verify)

    return parser


async def _cmd_forge(args: argparse.Namespace) -> int:
    """Run a full session: start, freeze, build, refine."""
    from dreamforge.config.settings import load_settings
    from dreamforge.core.models import ProjectConfig
    from dreamforge.llm.client_factory import create_generation_client
    from dreamforge.pipeline.controller import PipelineController

    settings = load_settings()
    client = create_generation_client(
        args.provider or settings.llm_default_provider,
        args.model or settings.llm_default_model,
        settings,
    )
    controller = PipelineController(client, settings)
    controller.subscribe(_print_event)

    config_fields = {
        "platform": args.platform or settings.manifest_platform,
        "quality": args.quality or settings.manifest_quality,
    }
    if args.seed:
        config_fields["seed"] = args.seed

    result = await controller.start(args.concept, ProjectConfig(**config_fields))
    if not result.ok:
        return 1

    controller.freeze()
    result = await controller.build()
    if not result.ok:
        return 1

    for instruction in args.refine:
        result = await controller.refine(instruction)
        if not result.ok:
            logger.warning("Refinement discarded: %s", instruction)

    _write_outputs(controller, args.output)
    _print_session_summary(controller, args.output)
    return 0


async def _cmd_verify(args: argparse.Namespace) -> int:
    """Validate a manifest's version and, if given, its hashes."""
    from dreamforge.core.errors import IncompatibleManifestError
    from dreamforge.manifest.manifest import load_manifest, verify_build

    if not args.manifest.is_file():
        logger.error("File not found: %s", args.manifest)
        return 1

    try:
        manifest = load_manifest(args.manifest.read_text(encoding="utf-8"))
    except IncompatibleManifestError as exc:
        logger.error("%s", exc)
        return 1

    print(f"\nManifest {args.manifest}:")
    print(f"  Version:     {manifest.version}")
    print(f"  Spec hash:   {manifest.spec_hash}")
    print(f"  Build hash:  {manifest.build_hash}")
    if manifest.parent_hash:
        print(f"  Parent hash: {manifest.parent_hash}")

    if args.spec is None or args.build is None:
        return 0

    spec = json.loads(args.spec.read_text(encoding="utf-8"))
    build_text = args.build.read_text(encoding="utf-8")
    if not verify_build(manifest, spec, build_text):
        print("  Integrity:   MISMATCH")
        return 1
    print("  Integrity:   OK")
    return 0


def _write_outputs(controller: object, output_dir: Path) -> None:
    """Persist spec.json, build.html and manifest.json."""
    session = controller.session
    output_dir.mkdir(parents=True, exist_ok=True)
    (output_dir / "spec.json").write_text(
        json.dumps(session.spec, indent=2, ensure_ascii=False), encoding="utf-8"
    )
    (output_dir / "build.html").write_text(session.document, encoding="utf-8")
    (output_dir / "manifest.json").write_text(session.manifest.to_json(), encoding="utf-8")


def _print_event(event: object) -> None:
    """Echo session log lines and errors to stdout."""
    from dreamforge.pipeline.events import EventType

    if event.type == EventType.LOG_LINE:
        print(f"> {event.data['text']}")
    elif event.type == EventType.ERROR:
        record = event.data["record"]
        print(f"! {record.title}: {record.message}")
        if record.suggestion:
            print(f"  {record.suggestion}")


def _print_session_summary(controller: object, output_dir: Path) -> None:
    from dreamforge.tracking.ledger import format_token_count

    stats = controller.session.get_stats()
    print(f"\nBuild complete:")
    print(f"  Build hash:   {stats['build_hash']}")
    print(f"  Refinements:  {stats['refinements']}")
    print(f"  Tokens:       {format_token_count(stats['tokens'])}")
    print(f"  Output:       {output_dir}")


def _setup_logging(verbose: bool, log_format: str | None = None) -> None:
    """Configure logging for CLI usage."""
    from pydantic import ValidationError

    from dreamforge.config.settings import ConfigurationError, load_settings
    from dreamforge.logging.logger import setup_logging

    level = "DEBUG" if verbose else "INFO"
    fmt = log_format or "text"
    log_file = None
    rotation, retention = "10MB", 30
    try:
        settings = load_settings()
    except (ConfigurationError, ValidationError):
        settings = None
    if settings is not None:
        level = "DEBUG" if verbose else settings.log_level
        fmt = log_format or settings.log_format
        log_file = settings.log_file
        rotation, retention = settings.log_rotation, settings.log_retention

    setup_logging(level=level, log_format=fmt, log_file=log_file, rotation=rotation, retention=retention)


if __name__ == "__main__":
    sys.exit(main())
