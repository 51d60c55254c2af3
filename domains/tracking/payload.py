"""
Canonical purchase payload sent to PixelFly.

The builder is pure: the same order and clock always yield the same dict.
"""
import re
import time
from typing import Any, Dict, List, Mapping, Optional

from domains.tracking.schemas import LineItem, Order

UTM_FIELDS = [
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
    "fbclid",
    "gclid",
    "ttclid",
    "msclkid",
]

_NON_DIGITS = re.compile(r"[^0-9]")


def make_event_id(order_id: int, event_time: int) -> str:
    return f"purchase_{order_id}_{event_time}"


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_phone(phone: str) -> str:
    return _NON_DIGITS.sub("", phone or "")


def _meta_value(meta: Mapping[str, str], field: str) -> str:
    # checkout stores click ids as hidden meta (`_utm_source`), imports use bare keys
    return (meta.get(f"_{field}") or meta.get(field) or "").strip()


def build_item(item: LineItem) -> Optional[Dict[str, Any]]:
    if item.product_id is None:
        return None

    data: Dict[str, Any] = {
        "item_id": str(item.product_id),
        "item_name": item.name,
        "price": float(item.price),
        "quantity": int(item.quantity),
    }
    if item.category:
        data["item_category"] = item.category
    variant = [value for value in item.variant_attributes.values() if value]
    if variant:
        data["item_variant"] = " / ".join(variant)
    return data


def build_fbc(fbclid: str, now: int) -> str:
    # fb.{subdomain_index}.{creation_time_ms}.{fbclid}
    return f"fb.1.{now * 1000}.{fbclid}"


def build_user_data(
    order: Order, cookies: Optional[Mapping[str, str]] = None, now: Optional[int] = None
) -> Dict[str, str]:
    cookies = cookies or {}
    billing = order.billing
    phone = normalize_phone(billing.phone)

    fbp = cookies.get("_fbp") or _meta_value(order.meta, "fbp")
    fbc = cookies.get("_fbc") or _meta_value(order.meta, "fbc")
    if not fbc:
        fbclid = _meta_value(order.meta, "fbclid")
        if fbclid:
            fbc = build_fbc(fbclid, now if now is not None else int(time.time()))

    user_data = {
        "fn": billing.first_name.strip(),
        "ln": billing.last_name.strip(),
        "em": normalize_email(billing.email),
        "ph": phone,
        "ct": billing.city.strip().lower(),
        "st": billing.state.strip(),
        "zp": billing.postcode.strip(),
        "country": billing.country.strip().upper(),
        "external_id": phone,
        "fbp": fbp,
        "fbc": fbc,
    }
    return {key: value for key, value in user_data.items() if value}


def extract_utm(meta: Mapping[str, str]) -> Dict[str, str]:
    utm = {}
    for field in UTM_FIELDS:
        value = _meta_value(meta, field)
        if value:
            utm[field] = value
    return utm


def build_purchase_event(
    order: Order,
    cookies: Optional[Mapping[str, str]] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Build the purchase payload for one order.
    :param order: order snapshot as posted by the shop
    :param cookies: first-party ad cookies of the checkout request
    :param now: unix time used for event_time / event_id
    :return: payload dict, JSON serializable
    """
    event_time = int(time.time()) if now is None else now

    items: List[Dict[str, Any]] = []
    for line in order.items:
        item = build_item(line)
        if item is not None:
            items.append(item)

    return {
        "event": "purchase",
        "event_id": make_event_id(order.id, event_time),
        "event_time": event_time,
        "action_source": "website",
        "event_source_url": order.checkout_order_received_url,
        "value": float(order.subtotal),
        "currency": order.currency,
        "transaction_id": str(order.id),
        "tax": float(order.total_tax),
        "shipping": float(order.shipping_total),
        "coupon": ", ".join(order.coupon_codes),
        "items": items,
        "content_ids": [item["item_id"] for item in items],
        "user_data": build_user_data(order, cookies, event_time),
        "context": {
            "ip": order.customer_ip_address,
            "user_agent": order.customer_user_agent,
            "utm": extract_utm(order.meta),
        },
    }


def build_datalayer_purchase(event: Dict[str, Any], order: Order) -> Dict[str, Any]:
    """Thank-you page `dataLayer.push` body."""
    return {
        "event": "purchase",
        "eventId": event["event_id"],
        "ecommerce": {
            "transaction_id": event["transaction_id"],
            "value": event["value"],
            "tax": event["tax"],
            "shipping": event["shipping"],
            "currency": event["currency"],
            "coupon": event["coupon"],
            "items": event["items"],
        },
        "cartContent": {
            "totals": {
                "applied_coupons": list(order.coupon_codes),
                "discount_total": float(order.discount_total),
                "subtotal": float(order.subtotal),
                "total": round(
                    order.subtotal - order.discount_total + order.total_tax + order.shipping_total,
                    2,
                ),
            },
            "items": event["items"],
        },
    }
