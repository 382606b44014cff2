import argparse
import json
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from dotenv import load_dotenv

from .bot.config import ConfigError, load_config, require_credentials
from .bot.creation import draft_market_request
from .bot.drafting import MarketDraftError
from .bot.generation import TextGenerator
from .bot.logging_utils import setup_logging
from .bot.models import Post
from .bot.runner import login_with_backoff, run_loop
from .bot.watermark import ELIGIBLE_REASONS
from .bsky_client import BskyAuthError, BskyClient, BskyCredentials
from .manifold_client import ManifoldClient


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def cmd_run(_: argparse.Namespace) -> None:
    """Start the mention poll loop."""
    run_loop()


def cmd_draft(args: argparse.Namespace) -> None:
    """Draft a market for a piece of text without creating anything.

    Examples:

        python -m mfoldbot.cli draft \
          --text "I'll have a bot built by the end of the week I hope!" \
          --author testing.bsky.social
    """
    cfg = load_config()
    setup_logging(cfg)
    generator = TextGenerator.from_config(cfg)
    post = Post(
        uri=args.uri or "",
        cid="",
        author_handle=args.author,
        text=args.text,
        created_at=args.date or datetime.now(timezone.utc).isoformat(),
    )
    request = draft_market_request(generator, post, args.resolver or args.author)
    print_json({"request": asdict(request), "payload": request.to_payload()})


def cmd_market(args: argparse.Namespace) -> None:
    """Show a Manifold market by slug."""
    cfg = load_config()
    client = ManifoldClient(api_key=cfg.manifold_api_key, base_url=cfg.manifold_api_base)
    market = client.get_market(args.slug)
    if market is None:
        raise SystemExit(f"No market found for slug '{args.slug}'.")
    print_json(asdict(market))


def cmd_notifications(args: argparse.Namespace) -> None:
    """List unread mention/reply notifications without marking them seen."""
    cfg = load_config()
    feed = BskyClient(
        credentials=BskyCredentials.load(),
        service=cfg.bsky_service,
        session_path=cfg.session_path,
    )
    login_with_backoff(feed, attempts=1)
    rows = [
        asdict(n)
        for n in feed.list_notifications(limit=args.limit)
        if n.reason in ELIGIBLE_REASONS and (args.all or not n.is_read)
    ]
    print_json(rows)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bluesky bot that turns mentioned posts into Manifold prediction markets.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    p_run = subparsers.add_parser("run", help="Start the mention poll loop")
    p_run.set_defaults(func=cmd_run, needs_credentials=True)

    # draft
    p_draft = subparsers.add_parser("draft", help="Draft a market from text (no market is created)")
    p_draft.add_argument("--text", required=True, help="Text of the post to turn into a market")
    p_draft.add_argument("--author", required=True, help="Handle of the post author")
    p_draft.add_argument("--date", help="Post timestamp (ISO 8601); defaults to now")
    p_draft.add_argument("--uri", help="Optional at:// URI of the post, used for the back-link")
    p_draft.add_argument("--resolver", help="Resolver handle; defaults to the author")
    p_draft.set_defaults(func=cmd_draft, needs_credentials=False)

    # market
    p_market = subparsers.add_parser("market", help="Show a market by slug")
    p_market.add_argument("slug", help="Market slug, the last path segment of its URL")
    p_market.set_defaults(func=cmd_market, needs_credentials=False)

    # notifications
    p_notifs = subparsers.add_parser("notifications", help="List mention/reply notifications")
    p_notifs.add_argument("--limit", type=int, default=50)
    p_notifs.add_argument("--all", action="store_true", help="Include notifications already read")
    p_notifs.set_defaults(func=cmd_notifications, needs_credentials=False)

    return parser


def main() -> None:
    load_dotenv(override=True)
    try:
        parser = build_parser()
        args = parser.parse_args()
        if args.needs_credentials:
            require_credentials(load_config())
        args.func(args)
    except (ConfigError, BskyAuthError) as e:
        raise SystemExit(str(e))
    except MarketDraftError as e:
        raise SystemExit(f"Draft failed: {e}")
    except Exception as e:
        # One-line message instead of a traceback for command failures.
        raise SystemExit(f"Error: {e}")


if __name__ == "__main__":
    main()
