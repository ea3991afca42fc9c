#!/usr/bin/env python3
"""
khobot CLI.

    COMMAND          ALIASES         WHAT IT DOES
    -------          -------         ----------------------------------
    serve            start, up       Start the HTTP service
    ask              q               Ask one question from the terminal
    usage            quota           Show daily quota and monthly spend
    conversations    convs, ls       List a user's conversations
    history          log             Page through one conversation
    sweep            gc              Delete expired conversations now
    import-catalog   load            Load a JSON export into the catalog
    ping             health          Ping a running instance
"""

import argparse
import asyncio
import json
import sys

from khobot import __version__


def _pipeline():
    from khobot.pipeline import AskPipeline
    return AskPipeline.from_config()


def _print_json(data):
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _run(coro):
    """Run one pipeline operation; a KhobotError becomes a message and exit 1."""
    from khobot.errors import KhobotError

    try:
        return asyncio.run(coro)
    except KhobotError as e:
        print(f"  error: {e.message}", file=sys.stderr)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_serve(args):
    """Start the khobot HTTP service."""
    import uvicorn
    from khobot.config import get_config

    cfg = get_config()
    host = args.host or cfg.get("server", {}).get("host", "0.0.0.0")
    port = args.port or int(cfg.get("server", {}).get("port", 8000))

    print(f"  khobot {__version__} listening on {host}:{port}")
    uvicorn.run("khobot.main:app", host=host, port=port, reload=args.reload, log_level="info")


def cmd_ask(args):
    """Ask one question through the full pipeline."""
    from khobot.errors import KhobotError

    pipe = _pipeline()
    question = " ".join(args.question)
    try:
        result = asyncio.run(pipe.ask(question, args.user, args.conversation))
    except KhobotError as e:
        print(f"  error: {e.message}", file=sys.stderr)
        if args.trace:
            for rec in pipe.recorder.recent(1):
                print(rec.render_text(), file=sys.stderr)
        sys.exit(1)

    print(result["answer"])
    print(f"\n  conversation: {result['conversationId']}")
    if args.trace:
        for rec in pipe.recorder.recent(1):
            print()
            print(rec.render_text())


def cmd_usage(args):
    """Show today's question count and this month's spend."""
    pipe = _pipeline()

    async def _gather():
        daily = await pipe.get_daily_usage(args.user) if args.user else None
        monthly = await pipe.get_monthly_usage()
        return daily, monthly

    daily, monthly = _run(_gather())
    if daily:
        print(f"  {args.user} on {daily['date']}: {daily['count']}/{daily['limit']} "
              f"({daily['remaining']} left)")
    print(f"  {monthly['period']}: spent {monthly['total_cost']:.4f} of {monthly['budget']:.2f} "
          f"(in={monthly['input_tokens']} out={monthly['output_tokens']} tokens)")


def cmd_conversations(args):
    """List a user's live conversations."""
    rows = _run(_pipeline().list_conversations(args.user, args.limit))
    if not rows:
        print("  (no conversations)")
        return
    for row in rows:
        print(f"  {row['conversationId']}  {row['updatedAt']}  {row['title']}")


def cmd_history(args):
    """Print one page of a conversation."""
    page = _run(
        _pipeline().get_conversation_history(args.user, args.conversation, args.limit, args.cursor)
    )
    if args.json:
        _print_json(page)
        return
    for msg in page["messages"]:
        print(f"  [{msg['createdAt']}] {msg['role']}: {msg['content']}")
    print(f"\n  total={page['total']} next_cursor={page['nextCursor']}")


def cmd_sweep(args):
    """Delete expired conversations."""
    removed = _run(_pipeline().sweep_expired())
    print(f"  removed {removed} expired conversation(s)")


def cmd_import_catalog(args):
    """Replace the catalog mirror with a JSON export."""
    from khobot.config import get_config
    from khobot.storage.catalog import SQLiteCatalog

    cfg = get_config()
    catalog = SQLiteCatalog(args.db or cfg.get("storage", {}).get("catalog_path", "./data/catalog.db"))
    counts = catalog.import_file(args.path)
    for table, n in counts.items():
        print(f"  {table}: {n}")


def cmd_ping(args):
    """Ping a running khobot instance."""
    import httpx

    url = (args.url or "http://localhost:8000").rstrip("/")
    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        resp.raise_for_status()
        print(f"  {url}: {resp.json().get('status', '?')} (v{resp.json().get('version', '?')})")
    except httpx.HTTPError as e:
        print(f"  {url}: unreachable ({e})", file=sys.stderr)
        sys.exit(1)


def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name and aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def main():
    parser = argparse.ArgumentParser(
        prog="khobot",
        description="khobot: grounded Q&A over warehouse data.",
        epilog="Run 'khobot <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", "-V", action="version", version=f"khobot {__version__}")

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    def setup_serve(p):
        p.add_argument("--host", default=None, help="Override listen host")
        p.add_argument("--port", "-p", type=int, default=None, help="Override listen port")
        p.add_argument("--reload", action="store_true", help="Auto-reload on code changes (dev)")

    _add_command(sub, ["serve", "start", "up"], "Start the HTTP service", cmd_serve, setup_serve)

    def setup_ask(p):
        p.add_argument("question", nargs="+", help="Question text")
        p.add_argument("--user", "-u", required=True, help="User id to ask as")
        p.add_argument("--conversation", "-c", default=None, help="Continue this conversation")
        p.add_argument("--trace", action="store_true", help="Print the state timeline")

    _add_command(sub, ["ask", "q"], "Ask one question", cmd_ask, setup_ask)

    def setup_usage(p):
        p.add_argument("--user", "-u", default=None, help="Also show this user's daily quota")

    _add_command(sub, ["usage", "quota"], "Show quota and spend", cmd_usage, setup_usage)

    def setup_conversations(p):
        p.add_argument("--user", "-u", required=True)
        p.add_argument("--limit", "-n", type=int, default=20)

    _add_command(sub, ["conversations", "convs", "ls"],
                 "List conversations", cmd_conversations, setup_conversations)

    def setup_history(p):
        p.add_argument("conversation", help="Conversation id")
        p.add_argument("--user", "-u", required=True)
        p.add_argument("--limit", "-n", type=int, default=20)
        p.add_argument("--cursor", type=int, default=None, help="Page ending before this index")
        p.add_argument("--json", action="store_true", help="Raw JSON output")

    _add_command(sub, ["history", "log"], "Page through a conversation", cmd_history, setup_history)

    _add_command(sub, ["sweep", "gc"], "Delete expired conversations", cmd_sweep)

    def setup_import(p):
        p.add_argument("path", help="JSON export with storage_items, products, storage_logs")
        p.add_argument("--db", default=None, help="Catalog DB path (default: from config)")

    _add_command(sub, ["import-catalog", "load"],
                 "Load a JSON export into the catalog", cmd_import_catalog, setup_import)

    def setup_ping(p):
        p.add_argument("--url", "-u", default=None, help="khobot URL (default: http://localhost:8000)")

    _add_command(sub, ["ping", "health"], "Ping a running instance", cmd_ping, setup_ping)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        return

    args.func(args)


if __name__ == "__main__":
    main()
