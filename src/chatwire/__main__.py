"""CLI entry point for chatwire."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import yaml

from . import __version__
from .config import AppConfig, load_config


def _load_config_or_exit(config_path: Path | None) -> AppConfig:
    try:
        return load_config(config_path)
    except (ValueError, OSError, yaml.YAMLError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _run_chat(
    config: AppConfig,
    prompt: str | None = None,
    resume_id: str | None = None,
    output_json: bool = False,
) -> int:
    """Launch the CLI chat mode."""
    from .cli.repl import EXIT_INTERRUPTED, run_cli

    try:
        return asyncio.run(
            run_cli(config, prompt=prompt, resume_id=resume_id, output_json=output_json, version=__version__)
        )
    except (KeyboardInterrupt, asyncio.CancelledError):
        return EXIT_INTERRUPTED


def main() -> None:
    parser = argparse.ArgumentParser(prog="chatwire", description="chatwire - streaming chat session client")
    subparsers = parser.add_subparsers(dest="command")

    chat_parser = subparsers.add_parser("chat", help="Chat with the agent (REPL, or one-shot with PROMPT)")
    chat_parser.add_argument("prompt", nargs="?", default=None, help="One-shot prompt (omit for REPL)")
    chat_parser.add_argument(
        "-r",
        "--resume",
        dest="resume_id",
        default=None,
        help="Resume a conversation by session ID",
    )
    chat_parser.add_argument("--reasoning", action="store_true", help="Ask the agent for reasoning steps")
    chat_parser.add_argument(
        "--json",
        dest="output_json",
        action="store_true",
        help="Print the conversation as JSON instead of rendering it (one-shot only)",
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to stderr")
    parser.add_argument("--config", dest="config_path", type=Path, default=None, help="Path to config.yaml")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command != "chat":
        parser.print_help()
        sys.exit(1)

    if args.output_json and args.prompt is None:
        print("Error: --json requires a PROMPT", file=sys.stderr)
        sys.exit(1)

    config = _load_config_or_exit(args.config_path)
    if args.reasoning:
        config.chat.reasoning = True

    sys.exit(_run_chat(config, prompt=args.prompt, resume_id=args.resume_id, output_json=args.output_json))


if __name__ == "__main__":
    main()
