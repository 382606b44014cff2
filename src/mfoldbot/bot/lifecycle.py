import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .context import BotContext
from .creation import create_market_for_post
from .extract import extract_verdict, mentions_handle
from .models import Notification, Verdict
from .resolution import resolve_market_from_reply


logger = logging.getLogger("mfoldbot.bot")


class LifecycleAction(Enum):
    IGNORE = "ignore"
    RESOLVE = "resolve"
    CREATE = "create"


@dataclass(frozen=True)
class LifecycleDecision:
    action: LifecycleAction
    verdict: Optional[Verdict] = None
    reason: str = ""


def classify(notification: Notification, bot_handle: str) -> LifecycleDecision:
    # Order matters: a verdict wins over creation even on a reply that also mentions the bot.
    if notification.reply is None:
        return LifecycleDecision(LifecycleAction.IGNORE, reason="no_parent")
    if not mentions_handle(notification.text, bot_handle):
        return LifecycleDecision(LifecycleAction.IGNORE, reason="no_mention")
    verdict = extract_verdict(notification.text)
    if verdict is not None:
        return LifecycleDecision(LifecycleAction.RESOLVE, verdict=verdict)
    return LifecycleDecision(LifecycleAction.CREATE)


def dispatch_notification(ctx: BotContext, notification: Notification) -> LifecycleDecision:
    decision = classify(notification, ctx.bot_handle)
    if decision.action is LifecycleAction.IGNORE:
        logger.debug("skip notification=%s reason=%s", notification.uri, decision.reason)
        return decision

    parent = ctx.feed.get_post_thread(notification.reply.parent.uri)
    if decision.action is LifecycleAction.RESOLVE:
        resolve_market_from_reply(ctx, notification, parent, decision.verdict)
    else:
        create_market_for_post(ctx, notification, parent)
    return decision
