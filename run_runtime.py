#!/usr/bin/env python3
"""
Tutor Runtime CLI - drive the local runtime from a terminal.

Commands:
    ensure-ready    Provision the sidecar environment (resumable)
    start           Provision, start the sidecar and keep it running until Ctrl-C
    status          Show provisioning and supervisor state
    index           Print the installed bundle index
    sync-bundles    Install app bundles (or one chapter's bundles) from the backend
    enqueue         Queue a JSON payload on a sync stream
    flush           Deliver due items (one stream, or every configured stream)
    dead-letters    Show dead-lettered items for a stream

Examples:
    python run_runtime.py ensure-ready
    python run_runtime.py start --provider deepseek --api-key sk-...
    python run_runtime.py enqueue progress '{"course_id": "c1", "chapter_id": "ch1", "status": "COMPLETED"}'
    python run_runtime.py flush
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any, List, Optional

from dotenv import load_dotenv

from tutor_runtime.config.env_config import get_env_bool
from tutor_runtime.config.settings import RuntimeSettings, load_settings
from tutor_runtime.context import RuntimeContext
from tutor_runtime.core.provisioner import ProvisioningEvent

logger = logging.getLogger("tutor_runtime.cli")


def setup_logging(settings: RuntimeSettings, verbose: bool = False) -> None:
    level_name = "DEBUG" if verbose else settings.log_level.upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for logger_name in ("urllib3", "asyncio", "aiohttp"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_progress(event: ProvisioningEvent) -> None:
    line = f"[{event.percent:3d}%] {event.phase.value}: {event.status}"
    if event.bytes_downloaded and event.total_bytes:
        line += f" ({event.bytes_downloaded}/{event.total_bytes} bytes)"
    print(line, flush=True)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Tutor Runtime - local sidecar orchestration and sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--storage-root", help="Override the storage root directory")
    parser.add_argument("--backend-url", help="Override the backend base URL")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("ensure-ready", help="Provision the sidecar environment")

    start = sub.add_parser("start", help="Start the sidecar and wait for Ctrl-C")
    start.add_argument("--provider", default=os.getenv("TUTOR_LLM_PROVIDER", "gpt"))
    start.add_argument("--api-key", default=os.getenv("LLM_API_KEY", ""))
    start.add_argument("--model")
    start.add_argument("--base-url")
    start.add_argument("--llm-format", choices=["anthropic", "openai", "custom"])
    start.add_argument("--python", dest="python_path")

    sub.add_parser("status", help="Show runtime state")
    sub.add_parser("index", help="Print the installed bundle index")

    sync = sub.add_parser("sync-bundles", help="Install bundles offered by the backend")
    sync.add_argument("--course", help="Course id (with --chapter)")
    sync.add_argument("--chapter", help="Chapter id (with --course)")

    enqueue = sub.add_parser("enqueue", help="Queue a JSON payload")
    enqueue.add_argument("stream")
    enqueue.add_argument("payload", help="JSON document")

    flush = sub.add_parser("flush", help="Deliver due queued items")
    flush.add_argument("stream", nargs="?")
    flush.add_argument("--endpoint", help="Endpoint path (defaults to the configured one)")
    flush.add_argument("--max-retries", type=int)

    dead = sub.add_parser("dead-letters", help="Show dead-lettered items")
    dead.add_argument("stream")

    return parser.parse_args(argv)


async def _wait_for_interrupt() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
    await stop.wait()


async def run_command(args: argparse.Namespace, context: RuntimeContext) -> int:
    command = args.command

    if command == "ensure-ready":
        result = await context.provisioner.ensure_ready(on_progress=_print_progress)
        _print_json(result.to_dict())
        return 0 if result.ready else 1

    if command == "start":
        context.supervisor.stderr_events.subscribe(lambda text: sys.stderr.write(text))
        result = await context.runtime.start(
            args.provider,
            args.api_key,
            model=args.model,
            base_url=args.base_url,
            llm_format=args.llm_format,
            python_path=args.python_path,
        )
        _print_json(result.to_dict())
        if not result.started:
            return 1
        print(f"Sidecar running at {context.settings.sidecar_base_url} (Ctrl-C to stop)", flush=True)
        try:
            await _wait_for_interrupt()
        finally:
            await context.supervisor.stop()
        return 0

    if command == "status":
        _print_json(
            {
                "provisioned": await context.provisioner.is_ready(),
                "supervisor": context.supervisor.status(),
                "health": await context.supervisor.health(),
                "tutor_root": str(context.settings.tutor_root),
            }
        )
        return 0

    if command == "index":
        index = await context.index_store.get()
        _print_json(index.to_dict())
        return 0

    if command == "sync-bundles":
        if args.course and args.chapter:
            result = await context.updates.sync_chapter_bundles(args.course, args.chapter)
        elif args.course or args.chapter:
            print("--course and --chapter must be given together", file=sys.stderr)
            return 2
        else:
            result = await context.updates.sync_app_bundles()
        _print_json(result.to_dict())
        return 0 if result.ok else 1

    if command == "enqueue":
        try:
            payload = json.loads(args.payload)
        except ValueError as e:
            print(f"Payload is not valid JSON: {e}", file=sys.stderr)
            return 2
        _print_json(await context.sync_queue.enqueue(args.stream, payload))
        return 0

    if command == "flush":
        if args.stream:
            endpoint = args.endpoint or context.settings.sync_endpoints.get(args.stream)
            if not endpoint:
                print(f"No endpoint configured for stream {args.stream!r}", file=sys.stderr)
                return 2
            result = await context.sync_queue.flush(args.stream, endpoint, args.max_retries)
            _print_json(result.to_dict())
        else:
            results = await context.sync_queue.flush_all()
            _print_json({name: r.to_dict() for name, r in results.items()})
        return 0

    if command == "dead-letters":
        records = await context.sync_queue.dead_letters(args.stream)
        _print_json([record.to_dict() for record in records])
        return 0

    print(f"Unknown command: {command}", file=sys.stderr)
    return 2


async def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)

    overrides = {}
    if args.storage_root:
        overrides["storage_root"] = args.storage_root
    if args.backend_url:
        overrides["backend_base_url"] = args.backend_url
    settings = load_settings(**overrides)
    setup_logging(settings, verbose=args.verbose or get_env_bool("TUTOR_DEBUG", False))

    context = RuntimeContext.create(settings)
    try:
        return await run_command(args, context)
    finally:
        await context.close()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
