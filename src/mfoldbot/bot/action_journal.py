"""Append-only JSONL record of market side effects.

One row per market created, reply posted, market orphaned or market
resolved. Orphaned rows are the ones that need a human: the market exists
on Manifold but the announcement reply never made it to Bluesky.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import normalize_str
from .watermark import utc_now_iso


logger = logging.getLogger("mfoldbot.bot")

MAX_QUESTION_CHARS = 400


def append_action_journal(
    path: Optional[Path],
    *,
    action_type: str,
    notification_uri: str,
    market_id: Optional[str] = None,
    slug: Optional[str] = None,
    url: Optional[str] = None,
    question: Optional[str] = None,
    outcome: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    if path is None:
        return
    row: Dict[str, Any] = {
        "ts": utc_now_iso(),
        "action_type": normalize_str(action_type).strip().lower(),
        "notification_uri": normalize_str(notification_uri).strip(),
    }
    optional = {
        "market_id": market_id,
        "slug": slug,
        "url": url,
        "question": normalize_str(question).strip()[:MAX_QUESTION_CHARS],
        "outcome": normalize_str(outcome).strip().upper(),
    }
    row.update({key: normalize_str(value).strip() for key, value in optional.items() if value})
    if isinstance(meta, dict) and meta:
        row["meta"] = meta

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(row, ensure_ascii=True) + "\n")
    except OSError as e:
        # Journal writes never block the action itself.
        logger.debug("Action journal write failed path=%s action=%s error=%s", path, row["action_type"], e)


def read_action_journal(path: Path, action_type: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return journal rows, optionally only those of one ``action_type``; bad lines are skipped."""
    if not path.exists():
        return []
    wanted = normalize_str(action_type).strip().lower()
    rows: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for raw in f:
            try:
                row = json.loads(raw)
            except ValueError:
                continue
            if isinstance(row, dict) and (not wanted or row.get("action_type") == wanted):
                rows.append(row)
    return rows
