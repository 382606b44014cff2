import logging
import time
from typing import Optional

from ..manifold_client import ManifoldError
from .action_journal import append_action_journal
from .context import BotContext
from .drafting import (
    build_market_json_prompt,
    build_market_request,
    build_question_prompt,
    clean_question,
    parse_market_payload,
)
from .extract import extract_resolver
from .generation import TextGenerator
from .models import Market, MarketRequest, Notification, Post


logger = logging.getLogger("mfoldbot.bot")


def choose_resolver(notification: Notification) -> str:
    """An explicit ``Resolver: @handle`` in the mention wins; otherwise whoever asked."""
    return extract_resolver(notification.text) or notification.author_handle


def draft_market_request(generator: TextGenerator, post: Post, resolver_handle: str) -> MarketRequest:
    question = clean_question(generator.complete(build_question_prompt(post)))
    logger.info("Drafted question chars=%s question=%r", len(question), question)
    payload = parse_market_payload(generator.complete(build_market_json_prompt(question)))
    return build_market_request(
        payload,
        question=question,
        resolver_handle=resolver_handle,
        source_post=post,
    )


def build_reply_text(question: str, market_url: str) -> str:
    return f"\"{question}\"\n\nYou can find the prediction market for this post at {market_url}"


def create_market_for_post(ctx: BotContext, notification: Notification, post: Post) -> Optional[Market]:
    """Draft, create and announce a market for ``post``.

    Any failure aborts the attempt. Once the market exists nothing is rolled
    back: a later failure leaves an orphaned market, which is logged and
    journaled for manual follow-up.
    """
    resolver = choose_resolver(notification)
    logger.info(
        "drafting market notification=%s post=%s author=%s resolver=%s",
        notification.uri,
        post.uri,
        post.author_handle,
        resolver,
    )
    request = draft_market_request(ctx.generator, post, resolver)

    if ctx.dry_run:
        logger.info(
            "Dry run: skipping action=create_market question=%r close_time=%s initial_prob=%s",
            request.question,
            request.close_time,
            request.initial_prob,
        )
        return None

    logger.info("action=create_market question=%r close_time=%s", request.question, request.close_time)
    created = ctx.markets.create_market(request.to_payload())
    slug = str(created.get("slug") or "")
    market_id = str(created.get("id") or "")
    append_action_journal(
        ctx.journal_path,
        action_type="market_created",
        notification_uri=notification.uri,
        market_id=market_id,
        slug=slug,
        question=request.question,
    )

    try:
        time.sleep(ctx.settle_seconds)
        market = ctx.markets.get_market(slug)
        if market is None:
            raise ManifoldError(f"Market slug={slug} not fetchable after {ctx.settle_seconds}s settle delay")
        root = notification.reply.root if notification.reply else notification.ref
        ctx.feed.reply(build_reply_text(request.question, market.url), root=root, parent=notification.ref)
    except Exception as e:
        logger.warning(
            "orphaned market slug=%s id=%s notification=%s error=%s",
            slug,
            market_id,
            notification.uri,
            e,
        )
        append_action_journal(
            ctx.journal_path,
            action_type="orphaned_market",
            notification_uri=notification.uri,
            market_id=market_id,
            slug=slug,
            question=request.question,
            meta={"error": str(e)},
        )
        raise

    append_action_journal(
        ctx.journal_path,
        action_type="reply_posted",
        notification_uri=notification.uri,
        market_id=market.id,
        slug=market.slug,
        url=market.url,
        question=request.question,
    )
    logger.info("ACTION SUCCESS market created slug=%s url=%s", market.slug, market.url)
    return market
