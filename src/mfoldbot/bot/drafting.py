import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .extract import post_web_url
from .models import MarketRequest, Post, normalize_str


MAX_QUESTION_CHARS = 120
DEFAULT_INITIAL_PROB = 50
BEGIN_MARKER = "[BEGIN OUTPUT]"
END_MARKER = "[END OUTPUT]"
# Generated text may not name a resolver; only the footer binds one.
_RESOLVER_TOKEN = re.compile(r"(\bresolver:\s*)@", re.IGNORECASE)

QUESTION_PROMPT_TEMPLATE = """Convert a post into a suitably structured question for a prediction market,
including resolution criteria, timeline.
As useful context when setting the market resolution dates, the current date/time is {date}.
If you reference a user in the market title, preface their handle with an @ symbol.
Answer with a single yes/no question of at most {max_chars} characters.

Example:
Post: "I caught the very tail end of the hedge fund boom when it was clear that employee compensation on Wall Street was going to be structurally lower going forward than it was before the mid-2000's, and it's the same exact dynamic in Silicon Valley today."
Author: vivalapanda.moe
Response: "Will real 75th percentile software engineer comp be higher than today in 2025 in The Bay Area"

Post: "You'll be able to get one Google L5, give them GPT-4-Copilot, and have them modernize the software systems for a whole org within a year

That means you can afford to have them work on something like improving farm automation, unlike the previously needed 10 person team"
Author: kache.bsky.social
Response: "Will I believe my prediction about AI enabling more SWEs to solve less lucrative problems by shrinking team sizes to have been fulfilled by EoY 2030"

Post: "An environmental contaminant that we don't understand and won't for another decade at least responsible for this stuff, I'd bet money on it.  Blaming food or sedentary lifestyles is a cop out."
Author: mfoldbot.bsky.social
Response: "Will the contaminant hypothesis of modern obesity be judged true by expert consensus before 2032?"

Post: "Testing some stuff! I'll have a bot built by the end of the week I hope!"
Author: testing.bsky.social
Response: "Will @testing.bsky.social have a bot built by April 21st, 2023?"

Post: "{text}"
Author: {author}
Response:"""

MARKET_JSON_PROMPT_TEMPLATE = """Create a manifold.markets prediction market JSON from a question. Do not use trailing commas. Begin your output with
[BEGIN OUTPUT] and end it with [END OUTPUT]. Use the YYYY-MM-DDTHH:MM:SS.000Z timestamp for the closeTime.

Example:
Input: "Will real 75th percentile software engineer comp be higher than today in 2025 in The Bay Area"
[BEGIN OUTPUT]
{{
  "description": "Resolves YES if the 75th percentile total compensation for software engineers in the Bay Area is higher at the start of 2025 than today.",
  "outcomeType": "BINARY",
  "question": "Will real 75th percentile software engineer comp be higher than today in 2025 in The Bay Area",
  "closeTime": "2025-01-01T00:00:00.000Z",
  "initialProb": 50
}}
[END OUTPUT]

Input: {question}
[BEGIN OUTPUT]
"""

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)
_TRAILING_COMMA_PATTERN = re.compile(r",\s*([}\]])")
_LABEL_PREFIX_PATTERN = re.compile(r"^\s*(?:response|question)\s*:\s*", re.IGNORECASE)


class MarketDraftError(RuntimeError):
    pass


def _clip_text(value: Any, max_chars: int) -> str:
    text = normalize_str(value).strip()
    if len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "..."


def build_question_prompt(post: Post) -> str:
    return QUESTION_PROMPT_TEMPLATE.format(
        date=post.created_at,
        max_chars=MAX_QUESTION_CHARS,
        text=post.text,
        author=post.author_handle,
    )


def build_market_json_prompt(question: str) -> str:
    return MARKET_JSON_PROMPT_TEMPLATE.format(question=question)


def _strip_outer_quotes(text: str) -> str:
    value = text.strip()
    pairs = (('"', '"'), ("'", "'"), ("“", "”"))
    for left, right in pairs:
        if len(value) >= 2 and value.startswith(left) and value.endswith(right):
            return value[1:-1].strip()
    return value


def clean_question(raw: Any) -> str:
    """Normalize a generated question and enforce the length limit.

    Over-long questions are rejected rather than truncated, since a clipped
    question no longer says what the market resolves on.
    """
    text = normalize_str(raw).strip()
    text = _LABEL_PREFIX_PATTERN.sub("", text)
    text = _strip_outer_quotes(text)
    text = re.sub(r"\s+", " ", text).strip()
    if not text:
        raise MarketDraftError("Generated question is empty")
    if len(text) > MAX_QUESTION_CHARS:
        raise MarketDraftError(
            f"Generated question is {len(text)} chars (max {MAX_QUESTION_CHARS}): {_clip_text(text, 160)}"
        )
    return text


def strip_output_markers(text: Any) -> str:
    blob = normalize_str(text).lstrip("\ufeff")
    begin = blob.find(BEGIN_MARKER)
    if begin >= 0:
        blob = blob[begin + len(BEGIN_MARKER):]
    end = blob.find(END_MARKER)
    if end >= 0:
        blob = blob[:end]
    blob = blob.replace(BEGIN_MARKER, "").replace(END_MARKER, "")
    fenced = _FENCE_PATTERN.search(blob)
    if fenced:
        blob = fenced.group(1)
    return blob.strip()


def _extract_first_balanced_json_object(text: str) -> str:
    start = text.find("{")
    if start < 0:
        return ""

    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escape:
                escape = False
                continue
            if ch == "\\":
                escape = True
                continue
            if ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
            continue
        if ch == "{":
            depth += 1
            continue
        if ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    return ""


def parse_market_payload(text: Any) -> Dict[str, Any]:
    raw = strip_output_markers(text)
    if not raw:
        raise MarketDraftError("Generated market payload is empty")

    candidates = [raw]
    balanced = _extract_first_balanced_json_object(raw)
    if balanced and balanced != raw:
        candidates.append(balanced)
    candidates.extend(_TRAILING_COMMA_PATTERN.sub(r"\1", c) for c in list(candidates))

    parsed: Any = None
    last_error: Optional[Exception] = None
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError as e:
            last_error = e
            continue
        break
    else:
        preview = _clip_text(raw.replace("\n", " "), 320)
        raise MarketDraftError(f"Generated market payload is not valid JSON ({last_error}; preview={preview})")

    if not isinstance(parsed, dict):
        raise MarketDraftError(f"Generated market payload is {type(parsed).__name__}, expected an object")
    return parsed


def parse_close_time(value: Any) -> int:
    """Return the close time as epoch milliseconds."""
    if value is None or isinstance(value, bool):
        raise MarketDraftError("Generated market payload has no closeTime")
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value <= 0:
            raise MarketDraftError(f"Generated closeTime is not a valid timestamp: {value!r}")
        # Values below 1e12 are epoch seconds.
        return int(value * 1000) if value < 1e12 else int(value)
    text = normalize_str(value).strip()
    if not text:
        raise MarketDraftError("Generated market payload has no closeTime")
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise MarketDraftError(f"Generated closeTime is not an ISO timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _coerce_initial_prob(value: Any) -> int:
    if value is None or value == "":
        return DEFAULT_INITIAL_PROB
    try:
        prob = float(normalize_str(value).strip().rstrip("%"))
    except ValueError as e:
        raise MarketDraftError(f"Generated initialProb is not a number: {value!r}") from e
    if not math.isfinite(prob):
        raise MarketDraftError(f"Generated initialProb is not a number: {value!r}")
    if 0 < prob < 1:
        prob *= 100
    return int(min(99, max(1, round(prob))))


def describe_with_binding(description: Any, resolver_handle: str, source_post: Post) -> str:
    body = _RESOLVER_TOKEN.sub(r"\1", normalize_str(description)).strip()
    source_url = post_web_url(source_post.uri, source_post.author_handle)
    footer = f"Resolver: @{resolver_handle.lstrip('@')}"
    if source_url:
        footer += f"\nSource: {source_url}"
    return f"{body}\n\n{footer}" if body else footer


def build_market_request(
    payload: Dict[str, Any],
    *,
    question: str,
    resolver_handle: str,
    source_post: Post,
) -> MarketRequest:
    return MarketRequest(
        question=question,
        close_time=parse_close_time(payload.get("closeTime")),
        initial_prob=_coerce_initial_prob(payload.get("initialProb")),
        description=describe_with_binding(payload.get("description"), resolver_handle, source_post),
    )
