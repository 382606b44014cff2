import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor, wait
from typing import Dict, List

from dotenv import load_dotenv

from ..bsky_client import BskyAuthError, BskyClient, BskyCredentials
from ..manifold_client import ManifoldClient
from .config import Config, ConfigError, load_config, require_credentials
from .context import BotContext
from .generation import TextGenerator
from .lifecycle import dispatch_notification
from .logging_utils import setup_logging
from .models import Notification
from .watermark import NotificationWatermark, utc_now_iso


logger = logging.getLogger("mfoldbot.bot")


class ExponentialBackoff:
    """Doubling delay capped at ``max_seconds``."""

    def __init__(self, min_seconds: float = 1.0, max_seconds: float = 60.0):
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds
        self._current = min_seconds

    def reset(self) -> None:
        self._current = self.min_seconds

    def next(self) -> float:
        current = self._current
        self._current = min(self._current * 2, self.max_seconds)
        return current


def login_with_backoff(feed: BskyClient, attempts: int = 5, max_delay_seconds: float = 60.0) -> None:
    backoff = ExponentialBackoff(min_seconds=1.0, max_seconds=max_delay_seconds)
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            feed.ensure_session()
            logger.info("Authenticated as handle=%s attempt=%s", feed.handle, attempt)
            return
        except Exception as e:
            if attempt >= attempts:
                raise BskyAuthError(f"Bluesky login failed after {attempts} attempts: {e}") from e
            delay = backoff.next()
            logger.warning("Login attempt=%s/%s failed error=%s retry_in=%ss", attempt, attempts, e, delay)
            time.sleep(delay)


def _handle_notification(ctx: BotContext, notification: Notification) -> str:
    logger.info(
        "Responding to notification=%s reason=%s author=%s",
        notification.uri,
        notification.reason,
        notification.author_handle,
    )
    try:
        decision = dispatch_notification(ctx, notification)
    except Exception as e:
        logger.exception("Notification pipeline failed notification=%s error=%s", notification.uri, e)
        return "failed"
    return decision.action.value


def poll_once(ctx: BotContext, watermark: NotificationWatermark, executor: Executor) -> Dict[str, int]:
    """Run one poll cycle and return outcome counts for the batch.

    Every eligible notification is dispatched concurrently. The batch is
    marked seen once, after dispatch, using the timestamp taken before
    listing so that notifications arriving mid-cycle stay unread.
    """
    seen_at = utc_now_iso()
    notifications = ctx.feed.list_notifications(limit=ctx.notification_limit)
    pending: List[Notification] = [n for n in notifications if watermark.accepts(n)]
    if pending:
        logger.info("Found %s new mentions.", len(pending))

    futures = [executor.submit(_handle_notification, ctx, n) for n in pending]
    watermark.advance(pending)

    if any(not n.is_read for n in notifications):
        try:
            ctx.feed.update_seen(seen_at)
        except Exception as e:
            logger.warning("Marking notifications seen failed seen_at=%s error=%s", seen_at, e)

    wait(futures)
    counts: Dict[str, int] = {}
    for future in futures:
        outcome = future.result()
        counts[outcome] = counts.get(outcome, 0) + 1
    return counts


def build_context(cfg: Config) -> BotContext:
    credentials = BskyCredentials(identifier=cfg.bsky_username or "", password=cfg.bsky_password or "")
    feed = BskyClient(credentials=credentials, service=cfg.bsky_service, session_path=cfg.session_path)
    login_with_backoff(feed, attempts=cfg.login_attempts, max_delay_seconds=cfg.login_backoff_max_seconds)
    return BotContext(
        feed=feed,
        markets=ManifoldClient(api_key=cfg.manifold_api_key, base_url=cfg.manifold_api_base),
        generator=TextGenerator.from_config(cfg),
        bot_handle=feed.handle,
        dry_run=cfg.dry_run,
        settle_seconds=cfg.settle_seconds,
        notification_limit=cfg.notification_limit,
        journal_path=cfg.journal_path,
    )


def run_loop() -> None:
    cfg = load_config()
    setup_logging(cfg)
    require_credentials(cfg)
    ctx = build_context(cfg)

    logger.info(
        "Poll loop starting handle=%s poll_seconds=%s settle_seconds=%s max_workers=%s dry_run=%s journal=%s",
        ctx.bot_handle,
        cfg.poll_seconds,
        cfg.settle_seconds,
        cfg.max_workers,
        cfg.dry_run,
        cfg.journal_path,
    )
    watermark = NotificationWatermark()
    iteration = 0
    with ThreadPoolExecutor(max_workers=max(1, cfg.max_workers), thread_name_prefix="mfoldbot") as executor:
        while True:
            iteration += 1
            try:
                counts = poll_once(ctx, watermark, executor)
                if counts:
                    logger.info("Poll cycle=%s outcomes=%s", iteration, counts)
                sleep_seconds = max(1, cfg.poll_seconds)
                sleep_reason = "poll_interval"
            except BskyAuthError as e:
                logger.error("Poll cycle=%s auth_error=%s", iteration, e)
                ctx.feed.session = {}
                sleep_seconds = max(1, cfg.error_pause_seconds)
                sleep_reason = "auth_error_backoff"
            except Exception as e:
                logger.exception("Poll cycle=%s loop_error=%s", iteration, e)
                sleep_seconds = max(1, cfg.error_pause_seconds)
                sleep_reason = "loop_error_backoff"

            if cfg.max_cycles > 0 and iteration >= cfg.max_cycles:
                logger.info("Reached max_cycles=%s; stopping.", cfg.max_cycles)
                return
            logger.info("Sleeping seconds=%s reason=%s", sleep_seconds, sleep_reason)
            time.sleep(sleep_seconds)
            if not ctx.feed.session.get("accessJwt"):
                try:
                    ctx.feed.ensure_session()
                except Exception as e:
                    logger.error("Re-authentication failed error=%s", e)


def main() -> None:
    load_dotenv(override=True)
    try:
        run_loop()
    except (ConfigError, BskyAuthError) as e:
        raise SystemExit(f"Fatal startup error: {e}")
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")


if __name__ == "__main__":
    main()
