import json
import os
from typing import Any, Dict, Optional

import requests
from requests import exceptions as requests_exceptions

from mfoldbot.bot.models import Market, Verdict


MANIFOLD_BASE_URL = "https://api.manifold.markets/v0"
MANIFOLD_BASE_ENV = "MANIFOLD_API_BASE"


class ManifoldError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _error_message(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text
    if not isinstance(data, dict):
        return resp.text
    return data.get("message") or data.get("error") or resp.text


class ManifoldClient:
    """Minimal Manifold Markets API client: create, fetch and resolve binary markets."""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        key = api_key if api_key is not None else os.getenv("MANIFOLD_API_KEY", "")
        self.api_key = str(key or "").strip()
        if not self.api_key:
            raise ManifoldError("Missing Manifold API key. Set MANIFOLD_API_KEY.")
        self.base_url = str(base_url or os.getenv(MANIFOLD_BASE_ENV) or MANIFOLD_BASE_URL).strip().rstrip("/")

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        path = path.lstrip("/")
        return f"{self.base_url}/{path}"

    def create_market(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not payload.get("question"):
            raise ValueError("Market payload must include a question.")
        try:
            resp = requests.post(
                self._url("market"),
                headers=self._headers,
                data=json.dumps(payload),
                timeout=60,
            )
        except requests_exceptions.Timeout as e:
            raise ManifoldError("Timed out while creating a market on Manifold.") from e

        if resp.status_code >= 400:
            raise ManifoldError(
                f"Manifold create error {resp.status_code}: {_error_message(resp)}",
                status_code=resp.status_code,
            )

        data = resp.json()
        if not isinstance(data, dict) or not data.get("slug"):
            raise ManifoldError(f"Manifold create response missing slug: {data}")
        return data

    def get_market(self, slug: str) -> Optional[Market]:
        if not slug.strip():
            raise ValueError("slug must be provided")
        try:
            resp = requests.get(
                self._url(f"slug/{slug}"),
                timeout=30,
            )
        except requests_exceptions.Timeout as e:
            raise ManifoldError(f"Timed out while fetching market '{slug}'.") from e

        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise ManifoldError(
                f"Manifold market error {resp.status_code}: {_error_message(resp)}",
                status_code=resp.status_code,
            )
        return Market.from_payload(resp.json())

    def resolve_market(self, market_id: str, outcome: Verdict) -> Dict[str, Any]:
        if not market_id.strip():
            raise ValueError("market_id must be provided")
        try:
            resp = requests.post(
                self._url(f"market/{market_id}/resolve"),
                headers=self._headers,
                data=json.dumps({"outcome": Verdict(outcome).value}),
                timeout=60,
            )
        except requests_exceptions.Timeout as e:
            raise ManifoldError(f"Timed out while resolving market '{market_id}'.") from e

        if resp.status_code >= 400:
            raise ManifoldError(
                f"Manifold resolve error {resp.status_code}: {_error_message(resp)}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError:
            return {"ok": True}
