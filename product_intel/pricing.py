import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .schemas import LowestPrice, PriceSource, Pricing, Product, TraceEntry

PRICE_TRACE_ENGINES = {"google_shopping", "google", "ebay"}
MAX_PRICE_SOURCES = 5
CURRENCY_MAP = {"€": "EUR", "eur": "EUR", "$": "USD", "usd": "USD", "£": "GBP", "gbp": "GBP"}
_CURRENCY_RE = re.compile(r"(€|eur|\$|usd|£|gbp)", re.IGNORECASE)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def normalize_price_string(raw: Any, default_currency: str = "EUR") -> Optional[Tuple[float, str]]:
    """Parse "1.299,00 €" / "$12.50" / 19.9 into (amount, currency)."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return float(raw), default_currency
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    match = _CURRENCY_RE.search(text)
    currency = CURRENCY_MAP.get(match.group(1).lower(), default_currency) if match else default_currency
    numeric = re.sub(r"[^0-9,.\-]", "", text)
    if not numeric:
        return None
    commas = numeric.count(",")
    dots = numeric.count(".")
    if commas and dots:
        if numeric.rfind(",") > numeric.rfind("."):
            normalized = numeric.replace(".", "").replace(",", ".", 1)
        else:
            normalized = numeric.replace(",", "")
    elif commas == 1 and not dots:
        normalized = numeric.replace(",", ".")
    else:
        normalized = numeric.replace(",", "")
    try:
        return float(normalized), currency
    except ValueError:
        return None


def product_keywords(product: Product) -> List[str]:
    ident = product.identification
    ids = product.details.identifiers
    values = [ident.name, ident.brand, getattr(ident, "sku", None), ids.sku, ids.ean, ids.gtin]
    return [str(v).strip().lower() for v in values if v and len(str(v).strip()) >= 3]


def _query_matches(query: str, keywords: List[str]) -> bool:
    if not query:
        return False
    lowered = query.lower()
    return any(keyword[:8] in lowered for keyword in keywords)


def _has_price(pricing: Pricing) -> bool:
    lowest = pricing.lowest_price
    return lowest.amount > 0 and bool(lowest.sources)


def collect_price_candidates(
    keywords: List[str],
    trace: Iterable[TraceEntry],
    default_currency: str = "EUR",
) -> List[Dict[str, Any]]:
    candidates: List[Dict[str, Any]] = []
    if not keywords:
        return candidates
    for entry in trace:
        if entry.engine not in PRICE_TRACE_ENGINES or entry.error:
            continue
        query_relevant = _query_matches(entry.query, keywords)
        for item in entry.summary:
            parsed = normalize_price_string(item.get("price"), default_currency)
            if not parsed or parsed[0] <= 0:
                continue
            blob = " ".join(str(item.get(k) or "") for k in ("title", "snippet")).lower()
            if not query_relevant and not any(k in blob for k in keywords):
                continue
            candidates.append(
                {
                    "amount": parsed[0],
                    "currency": parsed[1],
                    "source": item.get("source") or entry.engine,
                    "url": item.get("url") or "",
                    "engine": entry.engine,
                }
            )
    return candidates


def ensure_price_coverage(
    products: List[Product],
    trace: List[TraceEntry],
    default_currency: str = "EUR",
) -> List[Product]:
    """Backfill lowest_price from price-bearing trace entries. No extra searches."""
    updated: List[Product] = []
    for product in products:
        pricing = product.details.pricing
        if _has_price(pricing):
            updated.append(product)
            continue
        candidates = collect_price_candidates(product_keywords(product), trace, default_currency)
        if not candidates:
            updated.append(product)
            continue
        candidates.sort(key=lambda c: c["amount"])
        best = candidates[0]
        checked = utc_now()
        sources = [
            PriceSource(name=best["source"] or "SerpAPI", url=best["url"], price=best["amount"], checked_at=checked),
            *pricing.lowest_price.sources,
        ][:MAX_PRICE_SOURCES]
        confidence = pricing.price_confidence
        if not confidence or confidence <= 0:
            confidence = min(0.95, max(0.4, len(candidates) / 5))
        new_pricing = pricing.model_copy(
            update={
                "lowest_price": LowestPrice(
                    amount=best["amount"],
                    currency=best["currency"] or default_currency,
                    sources=sources,
                    last_checked_iso=checked,
                ),
                "price_confidence": confidence,
            }
        )
        details = product.details.model_copy(update={"pricing": new_pricing})
        updated.append(product.model_copy(update={"details": details}))
    return updated
