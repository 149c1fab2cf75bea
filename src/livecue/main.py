# Copyright © 2025 Ed Nutting
# SPDX-License-Identifier: MIT
# See LICENSE file for details

"""
Command line entry point.

    livecue serve    run the HTTP host and the capture agent for one room
    livecue follow   follow a room in a terminal teleprompter
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

from . import debug_log
from .agent import AgentEvent, AgentFailed, SourceFactory
from .config import (
    Config,
    get_agent_settings,
    get_alignment_settings,
    get_config_path,
    get_server_settings,
    get_stream_settings,
    load_config,
    save_config,
)
from .cursor import ScriptCursor
from .providers import (
    SOURCE_KINDS,
    available_models,
    create_source,
    download_model,
    is_model_downloaded,
)
from .server import WebServer
from .teleprompter import CLEAR_SCREEN, DIM, RESET, Teleprompter
from .transport import StreamTransport

logger = logging.getLogger(__name__)

FOLLOW_KEYS: str = "Enter/n next, p previous, <number> jump, r reset, o <file> open"


def _read_script(path: str | None) -> str:
    if not path:
        return ""
    return Path(path).read_text(encoding="utf-8")


def _source_factory(args: argparse.Namespace, script_text: str) -> SourceFactory:
    def factory():
        return create_source(
            args.source,
            script_text=script_text,
            model_id=args.model_id,
            device=args.device,
            chunk_ms=args.chunk_ms,
        )
    return factory


def _log_agent_event(event: AgentEvent) -> None:
    if isinstance(event, AgentFailed):
        print(f"Agent failed: {event.error}")
    else:
        logger.info("Agent event: %s", event)


async def serve(args: argparse.Namespace, config: Config, shutdown_event: asyncio.Event) -> None:
    """Run the HTTP host until shutdown is requested."""
    server_settings = get_server_settings(config)
    agent_settings = get_agent_settings(config)

    source_factory: SourceFactory | None = None
    if not args.no_agent:
        source_factory = _source_factory(args, _read_script(args.script_file))

    server = WebServer(
        host=args.host,
        port=args.port,
        room=args.room,
        source_factory=source_factory,
        participant_identity=agent_settings["participant_identity"],
        sink_size=server_settings["sink_size"],
    )
    if server.agent_manager is not None:
        server.agent_manager.on_event(_log_agent_event)

    await server.start()
    print(f"Serving room '{args.room}' at http://{args.host}:{args.port}")
    try:
        if server.agent_manager is not None and args.auto_start:
            result = await server.agent_manager.start()
            print(result.message)
        await shutdown_event.wait()
    finally:
        await server.stop()


async def follow(args: argparse.Namespace, config: Config, shutdown_event: asyncio.Event) -> None:
    """Run the terminal teleprompter until shutdown is requested."""
    stream_settings = get_stream_settings(config)
    stream_settings["url"] = args.url
    stream_settings["transport"] = args.transport

    cursor = ScriptCursor(
        _read_script(args.script_file),
        threshold=get_alignment_settings(config)["match_threshold"],
    )
    transport = StreamTransport.from_settings(args.room, args.participant, stream_settings)

    def redraw(_update: object) -> None:
        sys.stdout.write(CLEAR_SCREEN + teleprompter.render() + "\n")
        sys.stdout.write(f"{DIM}{FOLLOW_KEYS}{RESET}\n")
        sys.stdout.flush()

    def on_input() -> None:
        line = sys.stdin.readline()
        if not line:
            # EOF: stop reading but keep following
            loop.remove_reader(sys.stdin)
            return
        if not teleprompter.handle_command(line):
            logger.info("Unknown command: %s", line.strip())
            redraw(None)

    teleprompter = Teleprompter(transport, cursor, on_change=redraw)
    loop = asyncio.get_running_loop()
    try:
        loop.add_reader(sys.stdin, on_input)
        reading = True
    except (OSError, NotImplementedError, ValueError) as e:
        logger.warning("Keyboard commands unavailable: %s", e)
        reading = False

    redraw(None)
    await teleprompter.start()
    try:
        await shutdown_event.wait()
    finally:
        if reading:
            loop.remove_reader(sys.stdin)
        await teleprompter.stop()


def _build_parser(config: Config) -> argparse.ArgumentParser:
    server_settings = get_server_settings(config)
    stream_settings = get_stream_settings(config)
    agent_settings = get_agent_settings(config)

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="livecue - Live transcript delivery and script following"
    )

    parser.add_argument(
        "--list-devices",
        action="store_true",
        help="List available audio input devices and exit"
    )

    parser.add_argument(
        "--list-models",
        action="store_true",
        help="List the speech models that can be downloaded and exit"
    )

    parser.add_argument(
        "--download-model",
        action="store_true",
        help="Download the model given by --model-id (or the config) and exit"
    )

    parser.add_argument(
        "--save-config",
        action="store_true",
        help="Save the current serve options to the config file and exit"
    )

    parser.add_argument(
        "--debug-log",
        action="store_true",
        help="Enable debug logging to ./logs/"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show informational log messages"
    )

    # Shared by the top-level commands that need them
    parser.add_argument(
        "--model-id",
        default=agent_settings["model_id"],
        help="Vosk model identifier (default: from config or 'vosk-en-us-small')"
    )

    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the transcript server")
    serve_parser.add_argument(
        "--host",
        default=server_settings["host"],
        help="Web server host (default: from config or 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", "-p",
        type=int,
        default=server_settings["port"],
        help="Web server port (default: from config or 8000)"
    )
    serve_parser.add_argument(
        "--room",
        default=agent_settings["room"],
        help="Room the agent publishes into (default: from config or 'default')"
    )
    serve_parser.add_argument(
        "--source",
        choices=list(SOURCE_KINDS),
        default=agent_settings["source"],
        help="Speech source for the agent (default: from config or 'microphone')"
    )
    serve_parser.add_argument(
        "--script-file",
        default=config.get("script_file"),
        help="Script replayed by the scripted source"
    )
    serve_parser.add_argument(
        "--device", "-d",
        type=int,
        default=agent_settings["audio_device"],
        help="Audio input device index"
    )
    serve_parser.add_argument(
        "--chunk-ms",
        type=int,
        default=agent_settings["chunk_ms"],
        help="Audio chunk size in milliseconds (default: from config or 100)"
    )
    serve_parser.add_argument(
        "--model-id",
        dest="serve_model_id",
        default=None,
        help="Vosk model identifier"
    )
    serve_parser.add_argument(
        "--no-agent",
        action="store_true",
        help="Run without a capture agent (test endpoint only)"
    )
    serve_parser.add_argument(
        "--auto-start",
        action=argparse.BooleanOptionalAction,
        default=agent_settings["auto_start"],
        help="Start the agent as soon as the server is up"
    )
    serve_parser.add_argument(
        "--debug-log",
        action="store_true",
        dest="serve_debug_log",
        help="Enable debug logging to ./logs/"
    )

    follow_parser = subparsers.add_parser("follow", help="Follow a room in the terminal")
    follow_parser.add_argument(
        "--room",
        default=agent_settings["room"],
        help="Room to follow (default: from config or 'default')"
    )
    follow_parser.add_argument(
        "--participant",
        required=True,
        help="Name to subscribe as"
    )
    follow_parser.add_argument(
        "--script-file",
        default=config.get("script_file"),
        required=config.get("script_file") is None,
        help="Script to follow"
    )
    follow_parser.add_argument(
        "--url",
        default=stream_settings["url"],
        help="Server base URL (default: from config or http://127.0.0.1:8000)"
    )
    follow_parser.add_argument(
        "--transport",
        choices=["sse", "ws"],
        default=stream_settings["transport"],
        help="Stream transport (default: from config or 'sse')"
    )

    return parser


def _run(
    make_coro: Callable[[argparse.Namespace, Config, asyncio.Event], Coroutine[Any, Any, None]],
    args: argparse.Namespace,
    config: Config
) -> None:
    """Run a command coroutine until SIGINT/SIGTERM."""
    loop: asyncio.AbstractEventLoop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    shutdown_event: asyncio.Event = asyncio.Event()

    def shutdown(sig: int, frame: object) -> None:
        """Handle shutdown signals (SIGINT, SIGTERM) gracefully."""
        print("\nReceived shutdown signal...")
        loop.call_soon_threadsafe(shutdown_event.set)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    coro: Coroutine[Any, Any, None] = make_coro(args, config, shutdown_event)
    try:
        loop.run_until_complete(coro)
    except KeyboardInterrupt:
        pass
    finally:
        # Cancel any remaining tasks
        pending: set[asyncio.Task[object]] = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        # Allow cancelled tasks to complete
        if pending:
            with contextlib.suppress(Exception):
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


def main() -> None:
    """Main entry point."""
    # Load config first to use as defaults
    config: Config = load_config()
    parser = _build_parser(config)
    args: argparse.Namespace = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    )

    if args.command == "serve" and args.serve_model_id:
        args.model_id = args.serve_model_id

    # Handle special commands
    if args.list_devices:
        from .audio import list_devices
        list_devices()
        return

    if args.list_models:
        print("\nAvailable speech models:")
        print("-" * 80)
        for model in available_models():
            marker = " (downloaded)" if is_model_downloaded(model.id) else ""
            print(f"  {model.id}{marker}")
            print(f"    Name: {model.name}")
            print(f"    Size: {model.size_mb}MB")
            if model.description:
                print(f"    Description: {model.description}")
            print()
        return

    if args.download_model:
        print(f"Downloading model: {args.model_id}")

        def progress(stage: str, percent: int) -> None:
            print(f"\r  {stage}: {percent}%", end="", flush=True)

        path = download_model(args.model_id, progress_callback=progress)
        print(f"\nModel ready at {path}")
        return

    if args.save_config:
        if args.command == "serve":
            config["server"]["host"] = args.host
            config["server"]["port"] = args.port
            config["agent"]["room"] = args.room
            config["agent"]["source"] = args.source
            config["agent"]["audio_device"] = args.device
            config["agent"]["chunk_ms"] = args.chunk_ms
            config["agent"]["auto_start"] = args.auto_start
            config["script_file"] = args.script_file
        config["agent"]["model_id"] = args.model_id
        if save_config(config):
            print(f"Configuration saved to {get_config_path()}")
        return

    if args.command is None:
        parser.print_help()
        return

    # Enable debug logging if requested
    if args.debug_log or getattr(args, "serve_debug_log", False):
        debug_log.enable()
        debug_log.clear_logs()
        print("Debug logging enabled (logs will be saved to ./logs/)")

    if args.command == "serve":
        if args.source == "scripted" and not args.no_agent and not args.script_file:
            parser.error("the scripted source needs --script-file")
        if (args.source == "microphone" and not args.no_agent
                and not is_model_downloaded(args.model_id)):
            parser.error(f"model {args.model_id} is not downloaded; run: "
                         f"livecue --download-model --model-id {args.model_id}")
        _run(serve, args, config)
    else:
        _run(follow, args, config)


if __name__ == "__main__":
    main()
