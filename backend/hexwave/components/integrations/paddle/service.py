from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any

import httpx


logger = logging.getLogger(__name__)


class PaddleService:
    """Thin Paddle Billing API client covering the lookups the balance sync needs."""

    def __init__(self, *, api_key: str, base_url: str = "https://sandbox-api.paddle.com"):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        with httpx.Client(timeout=20.0) as client:
            response = client.get(f"{self.base_url}{path}", params=params, headers=self.headers)
        if response.status_code >= 400:
            logger.error("Paddle GET %s failed: %s", path, response.text)
            response.raise_for_status()
        body = response.json() or {}
        return body.get("data")

    def list_subscriptions(self, *, customer_id: str, statuses: tuple[str, ...] = ("active", "trialing")) -> list[dict]:
        data = self._get(
            "/subscriptions",
            params={"customer_id": customer_id, "status": ",".join(statuses)},
        )
        return data if isinstance(data, list) else []

    def get_transaction(self, transaction_id: str) -> dict | None:
        data = self._get(f"/transactions/{transaction_id}")
        return data if isinstance(data, dict) else None

    @staticmethod
    def parse_signature_header(header: str) -> tuple[str, str] | None:
        """Split ``ts=<unix>;h1=<hex>`` into its timestamp and hash."""
        parts: dict[str, str] = {}
        for chunk in (header or "").split(";"):
            key, sep, value = chunk.strip().partition("=")
            if sep:
                parts[key] = value
        ts = parts.get("ts")
        h1 = parts.get("h1")
        if not ts or not h1:
            return None
        return ts, h1

    @staticmethod
    def verify_signature(
        *,
        payload: bytes,
        signature: str,
        secret: str,
        tolerance_seconds: int = 300,
        now: float | None = None,
    ) -> bool:
        if not signature or not secret:
            return False
        parsed = PaddleService.parse_signature_header(signature)
        if parsed is None:
            return False
        ts, provided = parsed
        try:
            timestamp = int(ts)
        except ValueError:
            return False
        current = int(now if now is not None else time.time())
        if abs(current - timestamp) > tolerance_seconds:
            logger.warning("Paddle webhook timestamp outside tolerance window")
            return False
        signed_payload = ts.encode() + b":" + payload
        expected = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(provided, expected)
