"""Command-line chat: run one turn and print the reply.

Usage:
    python -m palaver.cli "hello there"
    python -m palaver.cli --session work --agent default "read notes.md"
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from palaver.api.runner import AgentRunner, ModelBackendError
from palaver.config import Settings
from palaver.main import configure_logging, create_components, shutdown_components
from palaver.workspace import WorkspaceError


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="palaver", description="Send one message to the agent.")
    parser.add_argument("text", nargs="+", help="Message text")
    parser.add_argument("--session", default="main", help="Conversation id (default: main)")
    parser.add_argument("--agent", default=None, help="Agent identity (default: PALAVER_AGENT_ID)")
    parser.add_argument("--model", default=None, help="Model name (default: PALAVER_MODEL)")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace, settings: Settings) -> str:
    user_text = " ".join(args.text).strip()
    if not user_text:
        raise ValueError("message text is empty")

    if args.agent:
        settings = settings.model_copy(update={"agent_id": args.agent})

    components = await create_components(settings)
    try:
        runner: AgentRunner = components["runner"]
        outcome = await runner.run_turn(args.session, user_text, model=args.model)
        return outcome.assistant_text
    finally:
        await shutdown_components(components)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = Settings()
    configure_logging(settings)

    try:
        reply = asyncio.run(run(args, settings))
    except (ModelBackendError, WorkspaceError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    sys.stdout.write(reply + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
