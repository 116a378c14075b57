import pytest

from product_intel.pricing import ensure_price_coverage, normalize_price_string
from product_intel.schemas import Product, TraceEntry


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("1.299,00 €", (1299.0, "EUR")),
        ("$1,299.50", (1299.5, "USD")),
        ("19,95 EUR", (19.95, "EUR")),
        ("£12", (12.0, "GBP")),
        (24.5, (24.5, "EUR")),
        ("1,234,567", (1234567.0, "EUR")),
    ],
)
def test_normalize_price_string(raw, expected):
    assert normalize_price_string(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "free", True, {"amount": 1}])
def test_normalize_price_string_rejects(raw):
    assert normalize_price_string(raw) is None


def _product(**pricing) -> Product:
    return Product.model_validate(
        {
            "id": "p1",
            "identification": {"method": "image", "name": "Nordlicht Lampe", "brand": "Nordlicht"},
            "details": {"pricing": pricing} if pricing else {},
        }
    )


def test_backfill_uses_cheapest_matching_trace_item():
    trace = [
        TraceEntry(
            engine="google_shopping",
            query="unrelated query",
            summary=[
                {"title": "Nordlicht Lampe weiß", "price": "49,99 €", "source": "Shop A", "url": "https://a"},
                {"title": "Other brand lamp", "price": "9,99 €", "source": "Shop X", "url": "https://x"},
                {"title": "Nordlicht Lampe", "price": "39,00 €", "source": "Shop B", "url": "https://b"},
            ],
        ),
        TraceEntry(engine="google_images", query="Nordlicht Lampe", summary=[{"title": "img", "price": "1 €"}]),
    ]
    [product] = ensure_price_coverage([_product()], trace)
    lowest = product.details.pricing.lowest_price
    assert lowest.amount == 39.0
    assert lowest.currency == "EUR"
    assert lowest.sources[0].name == "Shop B"
    assert lowest.last_checked_iso
    assert product.details.pricing.price_confidence == 0.4


def test_backfill_skips_products_with_price():
    original = _product(lowest_price={"amount": 59, "currency": "EUR", "sources": [{"name": "Shop", "url": "https://s"}]})
    trace = [TraceEntry(engine="google", query="Nordlicht Lampe", summary=[{"title": "Nordlicht", "price": "5 €"}])]
    [product] = ensure_price_coverage([original], trace)
    assert product.details.pricing.lowest_price.amount == 59


def test_backfill_ignores_errored_and_non_price_entries():
    trace = [
        TraceEntry(engine="ebay", query="Nordlicht Lampe", error="quota", summary=[{"title": "x", "price": "1 €"}]),
        TraceEntry(engine="bing", query="Nordlicht Lampe", summary=[{"title": "Nordlicht", "price": "2 €"}]),
    ]
    [product] = ensure_price_coverage([_product()], trace)
    assert product.details.pricing.lowest_price.amount == 0


def test_backfill_keeps_existing_sources_capped():
    sources = [{"name": f"S{i}", "url": f"https://s/{i}"} for i in range(6)]
    original = _product(lowest_price={"amount": 0, "currency": "EUR", "sources": sources}, price_confidence=0.7)
    trace = [TraceEntry(engine="ebay", query="Nordlicht Lampe", summary=[{"title": "t", "price": "15 €", "source": "eBay"}])]
    [product] = ensure_price_coverage([original], trace)
    lowest = product.details.pricing.lowest_price
    assert lowest.amount == 15.0
    assert len(lowest.sources) == 5
    assert lowest.sources[0].name == "eBay"
    assert product.details.pricing.price_confidence == 0.7
