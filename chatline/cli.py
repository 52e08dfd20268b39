#!/usr/bin/env python3
"""
chatline CLI.

Every command has a primary name and a short alias:

    COMMAND         ALIAS           WHAT IT DOES
    -------         -----           ----------------------------------
    serve           start           Start the chatline server
    models          ls              List the models the server accepts
    sweep           cleanup         Delete conversations that never got a turn
    export          dump            Export one conversation to JSON
    ask             ring            Send a message to a running server and stream the reply
"""

import argparse
import json
import os
import sys

from chatline import __version__


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the chatline server."""
    import uvicorn
    from chatline.config import get_config

    cfg = get_config()
    server_cfg = cfg.get("server", {})
    host = args.host or server_cfg.get("host", "0.0.0.0")
    port = args.port or server_cfg.get("port", 8000)

    print(f"  chatline v{__version__} on {host}:{port}")
    print(f"  Database: {cfg['storage']['sqlite_path']}")
    print()

    uvicorn.run(
        "chatline.main:app",
        host=host,
        port=port,
        reload=args.reload,
        log_level="info",
    )


def cmd_models(args):
    """List registered models."""
    from chatline.backends.registry import ModelRegistry
    from chatline.config import get_config

    registry = ModelRegistry.from_config(get_config())
    missing = set(registry.unconfigured_providers())

    for m in registry.list_models():
        marker = "*" if m["id"] == registry.default_model else " "
        note = "  (no API key)" if m["provider"] in missing else ""
        print(f"  {marker} {m['id']:<36} {m['provider']:<11} {m['name']}{note}")


def cmd_sweep(args):
    """Delete conversations that never received a turn."""
    from chatline.config import get_config
    from chatline.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    deleted = store.delete_empty_conversations(user_id=args.user, min_age_seconds=args.min_age)
    print(f"  Swept {deleted} empty conversation(s)")


def cmd_export(args):
    """Export one conversation with its turns."""
    from chatline.config import get_config
    from chatline.storage.sqlite_store import SQLiteStore

    cfg = get_config()
    store = SQLiteStore(cfg["storage"]["sqlite_path"])
    data = store.export_conversation(args.conversation_id)
    if data is None:
        print(f"  ✗  No conversation {args.conversation_id}", file=sys.stderr)
        sys.exit(1)

    indent = 2 if args.pretty else None
    if args.output:
        with open(args.output, "w") as f:
            json.dump(data, f, indent=indent, ensure_ascii=False)
        print(f"  Exported {len(data['turns'])} turns to {args.output}")
    else:
        print(json.dumps(data, indent=indent, ensure_ascii=False))


def cmd_ask(args):
    """Stream one reply from a running server."""
    import httpx
    from chatline.stream import TEXT_DELTA, is_complete, parse_line

    url = (args.url or "http://localhost:8000").rstrip("/")
    token = args.token or os.environ.get("CHATLINE_API_TOKEN", "")
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    message = " ".join(args.message)

    try:
        with httpx.Client(base_url=url, headers=headers, timeout=args.timeout) as client:
            conversation_id = args.conversation
            history = []
            if conversation_id:
                resp = client.get(f"/api/conversations/{conversation_id}/turns")
                if resp.status_code != 200:
                    print(f"  ✗  {resp.status_code}: {resp.json().get('error', resp.text)}", file=sys.stderr)
                    sys.exit(1)
                # Providers only see the turns sent with the request
                history = [{"role": t["role"], "parts": t["content"]} for t in resp.json()["turns"]]
            else:
                body = {"model_id": args.model} if args.model else {}
                resp = client.post("/api/conversations", json=body)
                if resp.status_code != 200:
                    print(f"  ✗  {resp.status_code}: {resp.json().get('error', resp.text)}", file=sys.stderr)
                    sys.exit(1)
                conversation_id = resp.json()["conversation"]["id"]
                print(f"  conversation {conversation_id}", file=sys.stderr)

            events = []
            with client.stream(
                "POST",
                "/api/chat",
                params={"conversationId": conversation_id},
                json={"messages": history + [{"role": "user", "content": message}]},
            ) as resp:
                if resp.status_code != 200:
                    resp.read()
                    print(f"  ✗  {resp.status_code}: {resp.json().get('error', resp.text)}", file=sys.stderr)
                    sys.exit(1)
                for line in resp.iter_lines():
                    event = parse_line(line)
                    if event is None:
                        continue
                    events.append(event)
                    if event.get("type") == TEXT_DELTA:
                        print(event.get("delta", ""), end="", flush=True)
    except httpx.ConnectError:
        print(f"  ✗  Nothing listening at {url}", file=sys.stderr)
        sys.exit(1)
    except httpx.HTTPError as e:
        print(f"\n  ✗  Stream broken: {e}", file=sys.stderr)
        sys.exit(1)

    print()
    if not is_complete(events):
        print("  ✗  Reply was cut short", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name and aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatline",
        description="chatline: streaming multi-provider chat backend.",
        epilog="Run 'chatline <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"chatline {__version__}",
    )

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start"], "Start the chatline server", cmd_serve, setup_serve)

    _add_command(sub, ["models", "ls"], "List registered models", cmd_models)

    def setup_sweep(p):
        p.add_argument("--user", default=None, help="Only this user's conversations")
        p.add_argument("--min-age", type=float, default=0,
                       help="Only conversations at least this many seconds old")

    _add_command(sub, ["sweep", "cleanup"],
                 "Delete conversations that never got a turn", cmd_sweep, setup_sweep)

    def setup_export(p):
        p.add_argument("conversation_id", help="Conversation to export")
        p.add_argument("--output", "-o", default=None, help="Output file (default: stdout)")
        p.add_argument("--pretty", action="store_true", help="Pretty-print JSON")

    _add_command(sub, ["export", "dump"], "Export a conversation to JSON", cmd_export, setup_export)

    def setup_ask(p):
        p.add_argument("message", nargs="+", help="Message to send")
        p.add_argument("--url", "-u", default=None, help="Server URL (default: http://localhost:8000)")
        p.add_argument("--token", "-t", default=None, help="API token (default: $CHATLINE_API_TOKEN)")
        p.add_argument("--conversation", "-c", default=None,
                       help="Existing conversation id (default: create one)")
        p.add_argument("--model", "-m", default=None, help="Model for a new conversation")
        p.add_argument("--timeout", type=float, default=120, help="Request timeout in seconds")

    _add_command(sub, ["ask", "ring"],
                 "Send a message and stream the reply", cmd_ask, setup_ask)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
