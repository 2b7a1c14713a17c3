"""Projection of stored carts into the shape the storefront renders.

Stored carts are heterogeneous: a line's ``product`` may be a populated
product document, a bare ``ObjectId`` left behind when the product was
deleted, or something older and half-filled. ``format_cart`` reconciles all
of them into ``{"items": [...], "summary": {...}}`` without ever raising.
"""
import math
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from format_response import format_document

DEFAULT_LOCALE = "fa"

PLACEHOLDERS: Dict[str, Dict[str, str]] = {
    "fa": {"unknown": "نامشخص", "no_name": "بدون نام"},
    "en": {"unknown": "Unknown", "no_name": "No name"},
}

UNKNOWN_PRODUCT_ID = "unknown"

_leading_float = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_leading_int = re.compile(r"^\s*([+-]?\d+)")


@dataclass(frozen=True)
class PopulatedProduct:
    snapshot: Mapping[str, Any]


@dataclass(frozen=True)
class UnresolvedProduct:
    identifier: Any


def resolve_product_ref(value):
    """Tag a stored product reference as populated or unresolved.

    Returns ``None`` when the line carries no reference at all.
    """
    if isinstance(value, (PopulatedProduct, UnresolvedProduct)):
        return value
    if isinstance(value, Mapping):
        return PopulatedProduct(value)
    if hasattr(value, "to_dict"):
        return PopulatedProduct(value.to_dict())
    if value is None or value == "":
        return None
    return UnresolvedProduct(value)


def placeholder_text(key: str, locale: Optional[str] = None) -> str:
    texts = PLACEHOLDERS.get(locale or DEFAULT_LOCALE) or PLACEHOLDERS[DEFAULT_LOCALE]
    return texts[key]


def parse_float(value) -> Optional[float]:
    """Parse the leading number of ``value``; ``None`` when there is none."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        try:
            numeric = float(value)
        except OverflowError:
            return None
    else:
        match = _leading_float.match(str(value))
        if not match:
            return None
        try:
            numeric = float(match.group(1))
        except (OverflowError, ValueError):
            return None
    return numeric if math.isfinite(numeric) else None


def parse_int(value) -> Optional[int]:
    """Parse the leading integer of ``value``; ``None`` when there is none."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    match = _leading_int.match(str(value))
    if not match:
        return None
    return int(match.group(1))


def _present(value) -> bool:
    return value is not None and value != "" and value != []


def first_present(accessors: Sequence[Callable], *args):
    for accessor in accessors:
        value = accessor(*args)
        if _present(value):
            return value
    return None


def _as_text(value):
    return str(value) if _present(value) else None


def _raw_reference(item, product):
    reference = item.get("product")
    if isinstance(reference, UnresolvedProduct):
        reference = reference.identifier
    if isinstance(reference, (Mapping, PopulatedProduct)):
        return None
    return _as_text(reference)


def _first_image(item, product):
    images = product.get("images")
    if isinstance(images, (list, tuple)) and images:
        return images[0]
    return None


# Each chain is tried in order; the first present value wins.
PRODUCT_ID_CHAIN = (
    lambda item, product: _as_text(product.get("_id")),
    lambda item, product: _as_text(product.get("id")),
    _raw_reference,
)
NAME_CHAIN = (lambda item, product: product.get("name"),)
PRICE_CHAIN = (lambda item, product: parse_float(product.get("price")),)
IMAGE_CHAIN = (
    lambda item, product: product.get("image_url"),
    _first_image,
    lambda item, product: product.get("image"),
)
STOCK_CHAIN = (
    lambda item, product: parse_int(product.get("stockQuantity")),
    lambda item, product: parse_int(product.get("stock_quantity")),
)
QUANTITY_CHAIN = (lambda item, product: parse_int(item.get("quantity")),)
DESCRIPTION_CHAIN = (lambda item, product: product.get("description"),)


def build_placeholder_product(identifier, locale: Optional[str] = None) -> Dict:
    return {
        "_id": identifier,
        "id": str(identifier),
        "name": placeholder_text("unknown", locale),
        "price": 0,
        "images": [],
    }


def resolve_product(item: Mapping, locale: Optional[str] = None) -> Dict:
    reference = resolve_product_ref(item.get("product"))
    if isinstance(reference, PopulatedProduct):
        return format_document(dict(reference.snapshot)) or {}
    if isinstance(reference, UnresolvedProduct):
        return build_placeholder_product(reference.identifier, locale)
    return {}


def format_cart_item(item, locale: Optional[str] = None) -> Dict:
    if not isinstance(item, Mapping):
        item = {}
    product = resolve_product(item, locale)

    price = first_present(PRICE_CHAIN, item, product) or 0
    stock = first_present(STOCK_CHAIN, item, product) or 0
    quantity = first_present(QUANTITY_CHAIN, item, product) or 1

    return {
        "product_id": first_present(PRODUCT_ID_CHAIN, item, product)
        or UNKNOWN_PRODUCT_ID,
        "name": first_present(NAME_CHAIN, item, product)
        or placeholder_text("no_name", locale),
        "price": max(price, 0),
        "image_url": str(first_present(IMAGE_CHAIN, item, product) or ""),
        "stock_quantity": max(stock, 0),
        "quantity": quantity if quantity > 0 else 1,
        "description": first_present(DESCRIPTION_CHAIN, item, product) or "",
    }


def summary_quantity(item) -> int:
    # Unlike the per-item display value, an unusable quantity counts as 0 here.
    if not isinstance(item, Mapping):
        return 0
    quantity = parse_int(item.get("quantity"))
    return quantity if quantity and quantity > 0 else 0


def round_price(value: float) -> float:
    if not math.isfinite(value):
        return 0
    return float(Decimal(repr(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def add_line_total(total: float, price: float, quantity: int) -> float:
    # Lines whose total cannot be represented as a finite float are skipped.
    try:
        candidate = total + price * quantity
    except OverflowError:
        return total
    return candidate if math.isfinite(candidate) else total


def empty_cart() -> Dict:
    return {"items": [], "summary": {"item_count": 0, "total_price": 0}}


def format_cart(cart, locale: Optional[str] = None) -> Dict:
    """Return the frontend view of ``cart``.

    ``cart`` may be ``None``, a mapping with an ``items`` sequence, or any
    object exposing ``to_dict()``. Items keep their stored order.
    """
    if cart is None:
        return empty_cart()
    if hasattr(cart, "to_dict") and not isinstance(cart, Mapping):
        cart = cart.to_dict()
    if not isinstance(cart, Mapping):
        return empty_cart()

    stored_items = cart.get("items") or []
    if not isinstance(stored_items, (list, tuple)):
        stored_items = []

    items = []
    item_count = 0
    total_price = 0.0
    for stored_item in stored_items:
        view_item = format_cart_item(stored_item, locale)
        quantity = summary_quantity(stored_item)
        items.append(view_item)
        item_count += quantity
        total_price = add_line_total(total_price, view_item["price"], quantity)

    return {
        "items": items,
        "summary": {
            "item_count": item_count,
            "total_price": round_price(total_price),
        },
    }
