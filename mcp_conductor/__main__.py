"""Command-line front end for mcp_conductor.

Usage:
    python -m mcp_conductor servers                        # preload + list tools per server
    python -m mcp_conductor servers --format json
    python -m mcp_conductor servers --config ./servers-config.yaml

    python -m mcp_conductor query "What's on my calendar today?"
    python -m mcp_conductor query "Open example.com" --tool-only --format json
    python -m mcp_conductor query "..." --user-id u1 --user-email me@example.com --timeout 60
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any


def _build_conductor(args: argparse.Namespace) -> Any:
    from mcp_conductor.conductor import Conductor

    return Conductor.from_config_file(args.config)


async def _run_servers(args: argparse.Namespace) -> int:
    async with _build_conductor(args) as conductor:
        conductor.connections.install_signal_handlers()
        status = await conductor.preload(args.timeout)
        actions = await conductor.server_actions()

    if args.format == "json":
        print(json.dumps({"status": status.to_dict(), "servers": actions}, indent=2))
        return 0 if status.failed == 0 else 1

    print(f"Servers: {status.total} total, {status.successful} loaded, {status.failed} failed")
    for entry in actions:
        state = "enabled" if entry["enabled"] else "disabled"
        if "error" in entry:
            print(f"\n{entry['name']} ({state}) ERROR: {entry['error']}")
            continue
        print(f"\n{entry['name']} ({state}) {len(entry['actions'])} tools")
        for action in entry["actions"]:
            summary = (action["description"] or "").strip().split("\n")[0]
            print(f"  {action['name']:<32} {summary}")
    return 0 if status.failed == 0 else 1


async def _run_query(args: argparse.Namespace) -> int:
    async with _build_conductor(args) as conductor:
        conductor.connections.install_signal_handlers()
        result = await conductor.process_query(
            args.query,
            conversation_id=args.conversation_id,
            user_id=args.user_id,
            user_email=args.user_email,
            timeout=args.timeout,
            llm_answer=not args.tool_only,
        )

    if args.format == "json":
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return 1 if result.error else 0

    if result.answer is not None:
        print(result.answer)
    flags = [
        name for name, on in (
            ("needs clarification", result.needs_clarification),
            ("no answer", result.no_answer),
            ("error", result.error),
        ) if on
    ]
    if flags:
        print(f"[{', '.join(flags)}]", file=sys.stderr)
    for record in result.tool_responses:
        marker = "FORCED STOP" if record.forced_stop else ("ERROR" if record.error else "ok")
        print(f"- {record.tool} @ {record.server}: {marker}", file=sys.stderr)
    print(f"conversation: {result.conversation_id}", file=sys.stderr)
    return 1 if result.error else 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="python -m mcp_conductor",
        description="Orchestrate MCP tool servers with a reasoning-service agent loop",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # servers
    servers_p = sub.add_parser("servers", help="Preload every server and list its tools")
    servers_p.add_argument("--config", help="Servers config file (JSON or YAML)")
    servers_p.add_argument("--timeout", type=float, help="Per-server preload timeout, seconds")
    servers_p.add_argument("--format", choices=["table", "json"], default="table", help="Output format")

    # query
    query_p = sub.add_parser("query", help="Run one query through the agent loop")
    query_p.add_argument("query", help="The user query")
    query_p.add_argument("--config", help="Servers config file (JSON or YAML)")
    query_p.add_argument("--conversation-id", help="Continue an existing conversation")
    query_p.add_argument("--user-id", help="Owning user id")
    query_p.add_argument("--user-email", help="User email, passed to calendar-style tools")
    query_p.add_argument("--timeout", type=float, help="Overall query timeout, seconds")
    query_p.add_argument("--tool-only", action="store_true", help="Return tool responses without a prose answer")
    query_p.add_argument("--format", choices=["text", "json"], default="text", help="Output format")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "servers":
        sys.exit(asyncio.run(_run_servers(args)))
    elif args.command == "query":
        sys.exit(asyncio.run(_run_query(args)))


if __name__ == "__main__":
    main()
