import json
import os
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from requests import exceptions as requests_exceptions

from mfoldbot.bot.models import Notification, Post, PostRef


BSKY_SERVICE_URL = "https://bsky.social"
BSKY_SERVICE_ENV = "BSKY_SERVICE"
POST_COLLECTION = "app.bsky.feed.post"
_LINK_PATTERN = re.compile(r"https?://[^\s<>\"')\]]+")
_EXPIRED_TOKEN_ERRORS = {"ExpiredToken", "InvalidToken"}


class BskyAuthError(Exception):
    pass


@dataclass
class BskyCredentials:
    identifier: str
    password: str

    @classmethod
    def load(cls) -> "BskyCredentials":
        """Load the bot account from BSKY_USERNAME / BSKY_PASSWORD."""
        identifier = os.getenv("BSKY_USERNAME", "").strip()
        password = os.getenv("BSKY_PASSWORD", "").strip()
        if not identifier or not password:
            raise BskyAuthError("BSKY_USERNAME and BSKY_PASSWORD must be set in the environment")
        return cls(identifier=identifier, password=password)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def detect_link_facets(text: str) -> List[Dict[str, Any]]:
    """Build richtext link facets; Bluesky indexes facets by UTF-8 byte offsets."""
    facets: List[Dict[str, Any]] = []
    for match in _LINK_PATTERN.finditer(text):
        url = match.group(0).rstrip(".,;:!?")
        start = len(text[: match.start()].encode("utf-8"))
        end = start + len(url.encode("utf-8"))
        facets.append(
            {
                "index": {"byteStart": start, "byteEnd": end},
                "features": [{"$type": "app.bsky.richtext.facet#link", "uri": url}],
            }
        )
    return facets


def _error_message(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text
    if not isinstance(data, dict):
        return resp.text
    return data.get("message") or data.get("error") or resp.text


def _error_code(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return ""
    if not isinstance(data, dict):
        return ""
    return str(data.get("error") or "")


class BskyClient:
    """Bluesky XRPC client covering what the market bot needs.

    Only the session endpoints ever see the account password; every other
    call carries the short-lived access token.
    """

    def __init__(
        self,
        credentials: Optional[BskyCredentials] = None,
        service: Optional[str] = None,
        session_path: Optional[Path] = None,
    ):
        self.credentials = credentials or BskyCredentials.load()
        self.service = (service or os.getenv(BSKY_SERVICE_ENV) or BSKY_SERVICE_URL).strip().rstrip("/")
        self.session_path = session_path
        self.session: Dict[str, Any] = {}
        # Workers share one client; session swaps happen under this lock.
        self._session_lock = threading.Lock()

    def _url(self, nsid: str) -> str:
        return f"{self.service}/xrpc/{nsid}"

    @property
    def handle(self) -> str:
        return str(self.session.get("handle") or self.credentials.identifier)

    @property
    def did(self) -> str:
        did = self.session.get("did")
        if not did:
            raise BskyAuthError("Not logged in to Bluesky")
        return str(did)

    @property
    def _headers(self) -> Dict[str, str]:
        token = self.session.get("accessJwt")
        if not token:
            raise BskyAuthError("Not logged in to Bluesky")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _store_session(self, data: Dict[str, Any], *, replace: bool = False) -> None:
        merged = {} if replace else dict(self.session)
        merged.update({k: v for k, v in data.items() if v is not None})
        self.session = merged
        if not self.session_path:
            return
        self.session_path.parent.mkdir(parents=True, exist_ok=True)
        with self.session_path.open("w", encoding="utf-8") as f:
            json.dump(self.session, f, indent=2)

    def login(self) -> Dict[str, Any]:
        payload = {"identifier": self.credentials.identifier, "password": self.credentials.password}
        try:
            resp = requests.post(
                self._url("com.atproto.server.createSession"),
                headers={"Content-Type": "application/json"},
                data=json.dumps(payload),
                timeout=30,
            )
        except requests_exceptions.Timeout as e:
            raise RuntimeError(f"Timed out while logging in to {self.service}.") from e

        if resp.status_code in {400, 401, 403}:
            raise BskyAuthError(f"Bluesky login failed {resp.status_code}: {_error_message(resp)}")
        if resp.status_code >= 400:
            raise RuntimeError(f"Bluesky error {resp.status_code}: {_error_message(resp)}")

        self._store_session(resp.json(), replace=True)
        return self.session

    def resume_session(self) -> bool:
        """Reuse a session saved by an earlier run; returns False when it is unusable."""
        if not self.session_path or not self.session_path.exists():
            return False
        try:
            with self.session_path.open("r", encoding="utf-8") as f:
                saved = json.load(f)
        except (OSError, ValueError):
            return False
        if not isinstance(saved, dict) or not saved.get("accessJwt"):
            return False

        self.session = dict(saved)
        try:
            resp = requests.get(
                self._url("com.atproto.server.getSession"),
                headers=self._headers,
                timeout=30,
            )
        except requests_exceptions.Timeout as e:
            raise RuntimeError("Timed out while resuming the Bluesky session.") from e

        if resp.status_code < 400:
            self._store_session(resp.json())
            return True
        if _error_code(resp) in _EXPIRED_TOKEN_ERRORS:
            try:
                self.refresh_session()
                return True
            except BskyAuthError:
                pass
        self.session = {}
        return False

    def refresh_session(self) -> None:
        refresh_token = self.session.get("refreshJwt")
        if not refresh_token:
            raise BskyAuthError("No refresh token available")
        try:
            resp = requests.post(
                self._url("com.atproto.server.refreshSession"),
                headers={"Authorization": f"Bearer {refresh_token}"},
                timeout=30,
            )
        except requests_exceptions.Timeout as e:
            raise RuntimeError("Timed out while refreshing the Bluesky session.") from e

        if resp.status_code >= 400:
            raise BskyAuthError(f"Bluesky session refresh failed {resp.status_code}: {_error_message(resp)}")
        self._store_session(resp.json())

    def ensure_session(self) -> None:
        with self._session_lock:
            if self.session.get("accessJwt"):
                return
            if self.resume_session():
                return
            self.login()

    def _renew_session(self, stale_token: str) -> None:
        """Replace an expired access token once, however many workers saw it expire."""
        with self._session_lock:
            if self.session.get("accessJwt") != stale_token:
                return
            try:
                self.refresh_session()
            except BskyAuthError:
                self.login()

    def _request(self, method: str, nsid: str, *, params=None, payload=None, timeout: int = 30) -> requests.Response:
        for attempt in range(2):
            headers = self._headers
            try:
                resp = requests.request(
                    method,
                    self._url(nsid),
                    headers=headers,
                    params=params,
                    data=json.dumps(payload) if payload is not None else None,
                    timeout=timeout,
                )
            except requests_exceptions.Timeout as e:
                raise RuntimeError(f"Timed out while contacting Bluesky for {nsid}.") from e

            if attempt == 0 and resp.status_code in {400, 401} and _error_code(resp) in _EXPIRED_TOKEN_ERRORS:
                self._renew_session(headers["Authorization"][len("Bearer "):])
                continue

            if resp.status_code in {401, 403}:
                raise BskyAuthError(f"Bluesky auth error {resp.status_code}: {_error_message(resp)}")
            if resp.status_code >= 400:
                raise RuntimeError(f"Bluesky error {resp.status_code} for {nsid}: {_error_message(resp)}")
            return resp
        raise BskyAuthError(f"Bluesky session could not be refreshed for {nsid}")

    def list_notifications(self, limit: int = 50) -> List[Notification]:
        resp = self._request("GET", "app.bsky.notification.listNotifications", params={"limit": limit})
        data = resp.json()
        items = data.get("notifications") if isinstance(data, dict) else None
        if not isinstance(items, list):
            return []
        return [Notification.from_payload(item) for item in items if isinstance(item, dict)]

    def update_seen(self, seen_at: Optional[str] = None) -> None:
        self._request(
            "POST",
            "app.bsky.notification.updateSeen",
            payload={"seenAt": seen_at or _utc_now_iso()},
        )

    def get_post_thread(self, uri: str) -> Post:
        if not uri.strip():
            raise ValueError("uri must be provided")
        resp = self._request("GET", "app.bsky.feed.getPostThread", params={"uri": uri, "depth": 0})
        data = resp.json()
        thread = data.get("thread") if isinstance(data, dict) else None
        post = thread.get("post") if isinstance(thread, dict) else None
        if not isinstance(post, dict):
            kind = thread.get("$type") if isinstance(thread, dict) else None
            raise RuntimeError(f"Bluesky thread unavailable uri={uri} type={kind}")
        return Post.from_payload(post)

    def reply(self, text: str, root: PostRef, parent: PostRef) -> Dict[str, Any]:
        if not text.strip():
            raise ValueError("Reply text must be provided.")
        record: Dict[str, Any] = {
            "$type": POST_COLLECTION,
            "text": text,
            "createdAt": _utc_now_iso(),
            "reply": {"root": root.to_payload(), "parent": parent.to_payload()},
        }
        facets = detect_link_facets(text)
        if facets:
            record["facets"] = facets
        resp = self._request(
            "POST",
            "com.atproto.repo.createRecord",
            payload={"repo": self.did, "collection": POST_COLLECTION, "record": record},
            timeout=60,
        )
        return resp.json()
