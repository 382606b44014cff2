import logging
from typing import Optional

from .action_journal import append_action_journal
from .context import BotContext
from .extract import extract_market_slug, extract_resolver
from .models import Notification, Post, Verdict


logger = logging.getLogger("mfoldbot.bot")


def _handle_key(handle: Optional[str]) -> str:
    return str(handle or "").strip().lstrip("@").lower()


def is_authorized_resolver(bound_resolver: Optional[str], requester: Optional[str]) -> bool:
    bound = _handle_key(bound_resolver)
    return bool(bound) and bound == _handle_key(requester)


def resolve_market_from_reply(
    ctx: BotContext,
    notification: Notification,
    parent: Post,
    verdict: Verdict,
) -> bool:
    """Resolve the market announced in ``parent`` if the reply author is its resolver.

    Every rejection is a silent no-op: nothing is posted back and nothing is
    raised. Returns True only when a resolve call was issued.
    """
    if _handle_key(parent.author_handle) != _handle_key(ctx.bot_handle):
        logger.info(
            "skip resolve notification=%s reason=parent_not_bot parent=%s parent_author=%s",
            notification.uri,
            parent.uri,
            parent.author_handle,
        )
        return False

    slug = extract_market_slug(parent.text)
    if not slug:
        logger.info("skip resolve notification=%s reason=no_market_link parent=%s", notification.uri, parent.uri)
        return False

    market = ctx.markets.get_market(slug)
    if market is None:
        logger.info("skip resolve notification=%s reason=market_not_found slug=%s", notification.uri, slug)
        return False
    if market.is_resolved:
        logger.info("skip resolve notification=%s reason=already_resolved slug=%s", notification.uri, slug)
        return False

    bound = extract_resolver(market.text_description)
    if not is_authorized_resolver(bound, notification.author_handle):
        logger.info(
            "skip resolve notification=%s reason=resolver_mismatch slug=%s requester=%s",
            notification.uri,
            slug,
            notification.author_handle,
        )
        return False

    if ctx.dry_run:
        logger.info("Dry run: skipping action=resolve_market slug=%s outcome=%s", slug, verdict.value)
        return False

    logger.info("action=resolve_market slug=%s id=%s outcome=%s", slug, market.id, verdict.value)
    ctx.markets.resolve_market(market.id, verdict)
    append_action_journal(
        ctx.journal_path,
        action_type="market_resolved",
        notification_uri=notification.uri,
        market_id=market.id,
        slug=slug,
        url=market.url,
        question=market.question,
        outcome=verdict.value,
    )
    logger.info("ACTION SUCCESS market resolved slug=%s outcome=%s", slug, verdict.value)
    return True
