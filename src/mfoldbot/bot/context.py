from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..bsky_client import BskyClient
from ..manifold_client import ManifoldClient
from .generation import TextGenerator


@dataclass
class BotContext:
    feed: BskyClient
    markets: ManifoldClient
    generator: TextGenerator
    bot_handle: str
    dry_run: bool = False
    settle_seconds: float = 5.0
    notification_limit: int = 50
    journal_path: Optional[Path] = None
