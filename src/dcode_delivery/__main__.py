"""Entry point for `python -m dcode_delivery` and the `dcode-delivery` CLI script."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from dcode_delivery.defaults import default_factories
from dcode_delivery.messaging import MessagingDispatcher, messaging_config_from_profile
from dcode_delivery.models import DeveloperProfile
from dcode_delivery.orchestrator import PipelineOrchestrator
from dcode_delivery.runner import PipelineRunner
from dcode_delivery.settings import RuntimeSettings, load_profile


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive a project's epics from plan to deployment")
    parser.add_argument("--project-dir", type=Path, default=Path.cwd(), help="Project to build (default: cwd)")
    parser.add_argument("--stories-file", type=Path, default=None, help="Markdown epic/story breakdown")
    parser.add_argument("--profile", type=Path, default=None, help="Developer profile JSON (default: ~/.dcode/profile.json)")
    parser.add_argument("--autonomous", action="store_true", help="Skip approval gates and auto-approve sign-off")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--resume", action="store_true", help="Resume an interrupted run from its saved state")
    mode.add_argument("--status", action="store_true", help="Print the pipeline status and exit")
    mode.add_argument("--reset", action="store_true", help="Reset the pipeline state and exit")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    project_dir = args.project_dir.resolve()
    try:
        settings = RuntimeSettings.from_env(project_dir / ".env")
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    if args.status or args.reset:
        try:
            orchestrator = PipelineOrchestrator(project_dir, state_dir=settings.state_dir)
        except ValueError as exc:
            logging.error("Unable to read pipeline state: %s", exc)
            return 1
        if args.reset:
            orchestrator.reset()
        print(orchestrator.format_status())
        return 0

    try:
        profile: DeveloperProfile = load_profile(args.profile)
        stories_text = None
        if args.stories_file is not None:
            stories_text = args.stories_file.read_text(encoding="utf-8")
        elif not args.resume:
            raise FileNotFoundError("--stories-file is required unless resuming")
    except (OSError, ValueError) as exc:
        logging.error("Unable to load run inputs: %s", exc)
        return 1

    runner = PipelineRunner(
        project_dir,
        settings,
        profile,
        default_factories(settings.state_dir),
        autonomous=args.autonomous or profile.autonomous_by_default,
        dispatcher=MessagingDispatcher(messaging_config_from_profile(profile)),
    )
    try:
        result = runner.run(stories_text, resume=args.resume)
    except (OSError, ValueError) as exc:
        logging.error("Pipeline could not start: %s", exc)
        return 1

    print(runner.orchestrator.format_status())
    return 0 if result.completed else 1


if __name__ == "__main__":
    raise SystemExit(main())
