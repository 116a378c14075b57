"""Resolve the model's JSON output into a canonical ProductBundle.

Two shapes are accepted. A document with a `products` list is authoritative and
validated as-is; a single legacy product object is lifted into a full record
with defaults. Anything else is rejected rather than half-populated.
"""

from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import ModelResponseError, UnrecognizedResultShape
from .schemas import ProductBundle

ID_KEYS = ("id", "sku", "product_id")
BARCODE_KEYS = ("barcode", "barcodes", "ean", "gtin")
NAME_KEYS = ("name", "product_name", "title")


def detect_method(has_images: bool, has_barcodes: bool) -> str:
    if has_images and has_barcodes:
        return "hybrid"
    if has_images:
        return "image"
    return "barcode"


def _first(data: Dict[str, Any], keys) -> Optional[Any]:
    for key in keys:
        value = data.get(key)
        if value not in (None, "", []):
            return value
    return None


def _is_legacy_product(data: Dict[str, Any]) -> bool:
    return any(_first(data, keys) is not None for keys in (ID_KEYS, BARCODE_KEYS, NAME_KEYS))


def _as_barcode_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    text = str(value).strip()
    return [text] if text else []


def _fill(target: Dict[str, Any], key: str, value: Any) -> None:
    if target.get(key) is None:
        target[key] = value


def _lift_images(value: Any) -> List[Dict[str, Any]]:
    # Legacy answers often list bare URLs instead of image objects.
    images: List[Dict[str, Any]] = []
    for entry in value if isinstance(value, list) else [value]:
        if isinstance(entry, str) and entry.strip():
            images.append({"source": "web", "url_or_base64": entry.strip()})
        elif isinstance(entry, dict):
            url = entry.get("url_or_base64") or entry.get("url")
            if url:
                images.append({**entry, "url_or_base64": url})
    return images


def _synthesize_product(
    data: Dict[str, Any],
    barcodes: List[str],
    has_images: bool,
    currency: str,
) -> Dict[str, Any]:
    identification = dict(data.get("identification") or {})
    details = dict(data.get("details") or {})

    found_barcodes = _as_barcode_list(_first(data, BARCODE_KEYS)) or list(barcodes)
    name = identification.get("name") or _first(data, NAME_KEYS) or ""
    product_id = _first(data, ID_KEYS) or (found_barcodes[0] if found_barcodes else None) or name

    _fill(identification, "name", name)
    _fill(identification, "brand", data.get("brand") or "")
    _fill(identification, "category", data.get("category") or "")
    _fill(identification, "barcodes", found_barcodes)
    _fill(identification, "confidence", 0.9 if data.get("confidence") is None else data.get("confidence"))
    identification["method"] = detect_method(has_images, bool(barcodes))

    for source_key, target_key in (
        ("short_description", "short_description"),
        ("description", "short_description"),
        ("key_features", "key_features"),
        ("features", "key_features"),
        ("attributes", "attributes"),
        ("images", "images"),
    ):
        if data.get(source_key) is not None and details.get(target_key) is None:
            details[target_key] = data[source_key]
    for key in ("short_description", "key_features", "identifiers", "images"):
        if details.get(key) is None:
            details.pop(key, None)
    if "images" in details:
        details["images"] = _lift_images(details["images"])

    pricing = dict(details.get("pricing") or data.get("pricing") or {})
    lowest = dict(pricing.get("lowest_price") or {})
    _fill(lowest, "amount", 0)
    _fill(lowest, "currency", currency)
    _fill(lowest, "sources", [])
    pricing["lowest_price"] = lowest
    _fill(pricing, "price_confidence", 0)
    details["pricing"] = pricing

    ops = dict(data.get("ops") or {})
    _fill(ops, "sync_status", "pending")
    _fill(ops, "revision", 1)

    return {
        "id": str(product_id),
        "identification": identification,
        "details": details,
        "ops": ops,
        "notes": data.get("notes") or {},
    }


def normalize_result(
    raw: Any,
    *,
    barcodes: List[str],
    has_images: bool,
    currency: str = "EUR",
) -> ProductBundle:
    if not isinstance(raw, dict):
        raise UnrecognizedResultShape(f"Model output is a {type(raw).__name__}, expected an object")

    if isinstance(raw.get("products"), list):
        candidate = raw
    elif _is_legacy_product(raw):
        candidate = {"products": [_synthesize_product(raw, barcodes, has_images, currency)]}
    else:
        keys = ", ".join(sorted(raw.keys())[:10]) or "<empty>"
        raise UnrecognizedResultShape(f"Model output has no products list or product fields (keys: {keys})")

    try:
        return ProductBundle.model_validate(candidate)
    except ValidationError as exc:
        raise ModelResponseError(f"Model output failed ProductBundle validation: {exc}") from exc
