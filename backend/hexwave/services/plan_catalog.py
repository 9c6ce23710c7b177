from __future__ import annotations

import json
import logging
from typing import Any

from ..platform.config import settings

logger = logging.getLogger(__name__)

ADDON_CYCLE = "addon"

# Higher number = higher tier; used to tell upgrades from downgrades.
PLAN_TIER_HIERARCHY = {
    "free": 0,
    "pro": 1,
    "ultimate": 2,
    "creator": 3,
}


def price_catalog() -> dict[str, dict[str, Any]]:
    try:
        raw = json.loads(settings.PADDLE_PRICE_CATALOG_JSON or "{}")
    except json.JSONDecodeError:
        logger.warning("PADDLE_PRICE_CATALOG_JSON is not valid JSON; using an empty catalog")
        raw = {}
    if not isinstance(raw, dict):
        return {}
    output: dict[str, dict[str, Any]] = {}
    for price_id, price in raw.items():
        if not isinstance(price, dict):
            continue
        try:
            credits = int(price.get("credits") or 0)
        except (TypeError, ValueError):
            continue
        if not str(price_id).strip() or credits <= 0:
            continue
        output[str(price_id)] = {
            "credits": credits,
            "plan_name": str(price.get("plan_name") or "Unknown"),
            "product_id": str(price.get("product_id") or "") or None,
            "tier": str(price.get("tier") or "pro"),
            "billing_cycle": str(price.get("billing_cycle") or "monthly"),
        }
    return output


def resolve_price(price_id: str | None) -> dict[str, Any] | None:
    if not price_id:
        return None
    return price_catalog().get(str(price_id))


def credits_for_price(price_id: str | None, quantity: int = 1) -> int:
    """Credits granted for one billing period of a price (add-on packs scale by quantity)."""
    price = resolve_price(price_id)
    if not price:
        return 0
    if price["billing_cycle"] == ADDON_CYCLE:
        return price["credits"] * max(int(quantity or 1), 1)
    return price["credits"]


def plan_name_for_price(price_id: str | None) -> str:
    price = resolve_price(price_id)
    return price["plan_name"] if price else "Unknown"


def billing_cycle_for_price(price_id: str | None) -> str:
    price = resolve_price(price_id)
    return price["billing_cycle"] if price else "monthly"


def is_addon_price(price_id: str | None) -> bool:
    return billing_cycle_for_price(price_id) == ADDON_CYCLE


def product_monthly_credits(product_id: str | None) -> int:
    """Monthly allocation for a product, taken from any of its subscription prices."""
    if not product_id:
        return 0
    for price in price_catalog().values():
        if price["product_id"] == product_id and price["billing_cycle"] != ADDON_CYCLE:
            return price["credits"]
    return 0


def tier_for_product(product_id: str | None) -> str:
    if not product_id:
        return "free"
    for price in price_catalog().values():
        if price["product_id"] == product_id:
            return price["tier"]
    return "pro"


def tier_level(tier: str | None) -> int:
    return PLAN_TIER_HIERARCHY.get(str(tier or "free"), 0)
