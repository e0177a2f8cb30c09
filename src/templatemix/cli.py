#!/usr/bin/env python3
"""
templatemix command-line interface.

    templatemix templates
    templatemix plan TEMPLATE --upload main-content=episode.mp3
    templatemix render TEMPLATE --upload main-content=episode.mp3 -o program.wav
    templatemix preview TEMPLATE --upload main-content=episode.mp3 --answer Yes

TEMPLATE is a template JSON file or the id of a built-in template.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional

from .assets.loader import AssetLoader
from .assets.resolver import UploadSet, missing_placeholders
from .config import Config
from .errors import TemplateMixError
from .live.graph import AsyncioClock, SimulatedGraph, VirtualClock
from .live.scheduler import LiveScheduler, PlayerSnapshot, PlayerState, SurveyResponse
from .render.engine import RenderEngine
from .template import BUILTIN_TEMPLATES, Template, get_builtin_template, load_template

logger = logging.getLogger(__name__)


def _load_template(ref: str) -> Template:
    if Path(ref).exists():
        return load_template(ref)
    return get_builtin_template(ref)


def _load_uploads(args) -> UploadSet:
    uploads = UploadSet()
    if args.uploads_json:
        with open(args.uploads_json, "r") as f:
            document = json.load(f)
        items = document.get("audioFiles", []) if isinstance(document, dict) else document
        for item in items:
            uploads.bind(item["placeholderKey"], item["fileUrl"])
    for pair in args.upload or []:
        key, sep, url = pair.partition("=")
        if not sep or not key or not url:
            raise argparse.ArgumentTypeError(f"--upload expects KEY=URL, got '{pair}'")
        uploads.bind(key, url)
    return uploads


def _survey_sink(path: Optional[str]) -> Callable[[SurveyResponse], None]:
    def sink(response: SurveyResponse) -> None:
        print(f"Survey response: {response.question} -> {response.answer}")
        if path:
            with open(path, "a") as f:
                f.write(json.dumps(response.to_dict()) + "\n")
    return sink


def cmd_templates(args, config: Config) -> int:
    for template_id in sorted(BUILTIN_TEMPLATES):
        template = get_builtin_template(template_id)
        placeholders = ", ".join(template.placeholder_keys()) or "(none)"
        print(f"{template.id:<20} {template.name:<20} {len(template.segments)} segments | uploads: {placeholders}")
    return 0


def cmd_plan(args, config: Config) -> int:
    template = _load_template(args.template)
    engine = RenderEngine(config)
    plan, _ = engine.plan(template, _load_uploads(args))
    print(json.dumps(plan.to_dict(), indent=2))
    return 0


def cmd_render(args, config: Config) -> int:
    template = _load_template(args.template)
    uploads = _load_uploads(args)
    missing = missing_placeholders(template, uploads)
    if missing:
        logger.error(f"Missing uploads for: {', '.join(missing)}")
        return 1

    engine = RenderEngine(config)
    output = engine.render_to_file(template, uploads, args.output, write_tags=args.tag or None)
    logger.info(f"✅ Program rendered: {output}")
    return 0


def _preview_virtual(scheduler: LiveScheduler, clock: VirtualClock, answer: Optional[str]) -> None:
    scheduler.play()
    while scheduler.is_playing:
        clock.run()
        if scheduler.survey_pending:
            if answer is None:
                print(f"Survey: {scheduler.survey.question} {list(scheduler.survey.options)}")
                scheduler.stop()
            else:
                scheduler.answer_survey(answer)
        elif scheduler.is_playing:
            logger.error("Playback stalled with nothing scheduled")
            scheduler.stop()


async def _preview_realtime(args, config: Config, template: Template, uploads: UploadSet) -> None:
    clock = AsyncioClock()
    scheduler = LiveScheduler(
        template,
        uploads,
        SimulatedGraph(clock),
        clock,
        AssetLoader.from_config(config),
        config=config,
        survey_sink=_survey_sink(args.survey_log),
    )
    scheduler.subscribe_log(print)
    done = asyncio.Event()

    def on_change(snapshot: PlayerSnapshot) -> None:
        if snapshot.survey_pending:
            if args.answer is None:
                print(f"Survey: {snapshot.survey_question} {list(snapshot.survey_options)}")
                clock.loop.call_soon(scheduler.stop)
            else:
                clock.loop.call_soon(scheduler.answer_survey, args.answer)
        elif snapshot.state is PlayerState.STOPPED:
            done.set()

    scheduler.subscribe(on_change)
    scheduler.load()
    scheduler.play()
    await done.wait()


def cmd_preview(args, config: Config) -> int:
    template = _load_template(args.template)
    uploads = _load_uploads(args)

    if args.realtime:
        asyncio.run(_preview_realtime(args, config, template, uploads))
        return 0

    clock = VirtualClock()
    scheduler = LiveScheduler(
        template,
        uploads,
        SimulatedGraph(clock),
        clock,
        AssetLoader.from_config(config),
        config=config,
        survey_sink=_survey_sink(args.survey_log),
    )
    scheduler.subscribe_log(print)
    scheduler.load()
    _preview_virtual(scheduler, clock, args.answer)
    print(f"Preview finished at t={clock.now():.2f}s")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="templatemix", description=__doc__.split("\n")[1])
    parser.add_argument("--config", help="Path to templatemix.toml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("templates", help="List built-in templates")

    def with_sources(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
        p.add_argument("template", help="Template JSON path or built-in template id")
        p.add_argument("--upload", action="append", metavar="KEY=URL",
                       help="Bind an upload to a placeholder key (repeatable)")
        p.add_argument("--uploads-json", help='JSON file: [{"placeholderKey": ..., "fileUrl": ...}]')
        return p

    with_sources(sub.add_parser("plan", help="Print the Mix Plan as JSON"))

    render = with_sources(sub.add_parser("render", help="Render the program to a WAV file"))
    render.add_argument("-o", "--output", required=True, help="Output .wav path")
    render.add_argument("--tag", action="store_true", help="Add ID3 tags to the output")

    preview = with_sources(sub.add_parser("preview", help="Run the live scheduler without audio output"))
    preview.add_argument("--answer", help="Answer to give when the survey appears")
    preview.add_argument("--realtime", action="store_true", help="Run in wall-clock time")
    preview.add_argument("--survey-log", help="Append survey responses to this JSON-lines file")
    return parser


COMMANDS = {
    "templates": cmd_templates,
    "plan": cmd_plan,
    "render": cmd_render,
    "preview": cmd_preview,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entrypoint."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    )

    try:
        config = Config.load(args.config)
        return COMMANDS[args.command](args, config)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except (TemplateMixError, argparse.ArgumentTypeError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    except Exception as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
