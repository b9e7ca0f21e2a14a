"""
Apply a saved generation response to a sandbox session from the command line.

This example drives the same pieces the HTTP server uses: a SessionRegistry
backed by the HTTP sandbox provider, and a StreamingApplyEngine wrapped in
session recovery. Sessions live on the sandbox service, so a session created
by one invocation can be reused by the next with --session.

Usage:
    # Create a session, apply a response file, print progress events
    python apply_response.py --file response.txt

    # Apply to an existing session
    python apply_response.py --session sess-123 --file response.txt

    # Read the response from stdin and checkpoint afterwards
    cat response.txt | python apply_response.py --session sess-123 --checkpoint "After header"

    # Replay a captured generation event stream (text/event-stream body)
    python apply_response.py --sse --file generation.sse

    # Check or delete a session
    python apply_response.py --session sess-123 --status
    python apply_response.py --session sess-123 --delete
"""

import argparse
import asyncio
import json
import logging
import sys

from dotenv import load_dotenv

from src.code_apply.apply_engine import StreamingApplyEngine
from src.code_apply.events import iter_sse_events
from src.code_apply.recovery import apply_with_session_recovery
from src.sandbox_backends.config import SandboxConfig
from src.sandbox_backends.errors import SandboxError
from src.sandbox_backends.factory import create_provider
from src.sandbox_backends.session_registry import SessionRegistry


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Apply a generation response to a sandbox")
    parser.add_argument(
        "--session",
        "-s",
        type=str,
        default=None,
        help="Existing session ID (default: create a new session)",
    )
    parser.add_argument(
        "--file",
        "-f",
        type=str,
        default=None,
        help="File holding the response text (default: read stdin)",
    )
    parser.add_argument(
        "--checkpoint",
        type=str,
        default=None,
        help="Label for a checkpoint taken after a clean apply",
    )
    parser.add_argument(
        "--sse",
        action="store_true",
        help="Input is a captured server-sent-event generation stream, not raw text",
    )
    parser.add_argument("--status", action="store_true", help="Print session status and exit")
    parser.add_argument("--delete", action="store_true", help="Terminate the session and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args()


def print_event(event: dict) -> None:
    etype = event.get("type")
    if etype == "complete":
        print(f"\n{event.get('message')}")
        return
    if etype == "file-progress" and "current" in event:
        print(f"  [{event['current']}/{event['total']}] {event['path']} ({event['change_type']})")
        return
    if etype in ("step", "status"):
        print(event.get("message", ""))
        return
    if etype in ("error", "warning"):
        print(f"{etype.upper()}: {event.get('error') or event.get('message')}")


async def run(args) -> int:
    cfg = SandboxConfig.from_env()
    registry = SessionRegistry(lambda: create_provider(config=cfg), idle_ttl_s=cfg.idle_ttl_s)

    if args.status:
        status = await registry.check_session_status(args.session or "")
        print(json.dumps(status.to_dict(), indent=2))
        return 0 if status.active else 1

    if args.delete:
        await registry.require_provider(args.session or "")
        if await registry.terminate_session(args.session):
            print(f"Deleted sandbox '{args.session}'")
            return 0
        print(f"No sandbox found for '{args.session}'")
        return 1

    if args.file:
        with open(args.file, encoding="utf-8") as fh:
            text = fh.read()
    else:
        text = sys.stdin.read()

    async def attempt(provider):
        async def raw():
            yield text

        chunks = iter_sse_events(raw()) if args.sse else raw()

        engine = StreamingApplyEngine(
            provider, emit=print_event, checkpoint_label=args.checkpoint
        )
        info = provider.get_sandbox_info()
        print(f"Applying to sandbox {info.session_id if info else '?'} ...")
        return await engine.run(chunks)

    result = await apply_with_session_recovery(registry, args.session, attempt, emit=print_event)
    for err in result.errors:
        print(f"  - {err}")
    provider = registry.get_default_provider()
    info = provider.get_sandbox_info() if provider else None
    if info is not None:
        print(f"Session: {info.session_id}  Preview: {info.url}")
    # Sessions outlive this process; close HTTP clients without terminating.
    for sid in registry.list_sessions():
        p = registry.get_provider(sid)
        if p is not None:
            await p.aclose()
    return 0 if result.completed and not result.partial_failure else 2


def main():
    """Main entry point."""
    load_dotenv()
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    if (args.status or args.delete) and not args.session:
        print("Error: --status and --delete need --session")
        sys.exit(1)
    try:
        sys.exit(asyncio.run(run(args)))
    except SandboxError as e:
        print(f"\nError: {e}\n")
        sys.exit(1)


if __name__ == "__main__":
    main()
