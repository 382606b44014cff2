import re
from typing import Optional

from .models import Verdict, normalize_str


HANDLE_CHARS = r"A-Za-z0-9._-"
# A handle ends at whitespace, end of text or light punctuation; anything else makes it malformed.
RESOLVER_PATTERN = re.compile(rf"\bresolver:\s*@([{HANDLE_CHARS}]+)(?=\s|$|[,;:)\]])", re.IGNORECASE)
VERDICT_PATTERN = re.compile(r"\bresolve:\s*([A-Za-z]+)\b", re.IGNORECASE)
MARKET_URL_PATTERN = re.compile(
    r"https?://(?:www\.)?manifold\.markets/[A-Za-z0-9_-]+/([A-Za-z0-9_-]+)",
    re.IGNORECASE,
)
AT_URI_PATTERN = re.compile(r"^at://([^/]+)/app\.bsky\.feed\.post/([^/?#]+)$")

_VERDICTS = {v.value: v for v in Verdict}


def extract_resolver(text: Optional[str]) -> Optional[str]:
    for match in RESOLVER_PATTERN.finditer(normalize_str(text)):
        handle = match.group(1).rstrip(".")
        if handle:
            return handle
    return None


def extract_verdict(text: Optional[str]) -> Optional[Verdict]:
    for match in VERDICT_PATTERN.finditer(normalize_str(text)):
        verdict = _VERDICTS.get(match.group(1).upper())
        if verdict is not None:
            return verdict
    return None


def extract_market_slug(text: Optional[str]) -> Optional[str]:
    match = MARKET_URL_PATTERN.search(normalize_str(text))
    if not match:
        return None
    return match.group(1)


def mentions_handle(text: Optional[str], handle: Optional[str]) -> bool:
    key = normalize_str(handle).strip().lstrip("@")
    if not key:
        return False
    pattern = rf"(?<![@{HANDLE_CHARS}])@{re.escape(key)}(?!\.?[A-Za-z0-9_-])"
    return re.search(pattern, normalize_str(text), flags=re.IGNORECASE) is not None


def post_web_url(uri: str, handle: Optional[str] = None) -> str:
    """Map an at:// post URI to its public bsky.app link."""
    match = AT_URI_PATTERN.match(normalize_str(uri).strip())
    if not match:
        return normalize_str(uri)
    did, rkey = match.groups()
    profile = normalize_str(handle).strip().lstrip("@") or did
    return f"https://bsky.app/profile/{profile}/post/{rkey}"
