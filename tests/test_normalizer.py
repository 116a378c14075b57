import copy

import pytest

from product_intel.errors import ModelResponseError, UnrecognizedResultShape
from product_intel.normalizer import detect_method, normalize_result
from tests.fakes import SAMPLE_BUNDLE


def test_products_array_passes_through():
    bundle = normalize_result(copy.deepcopy(SAMPLE_BUNDLE), barcodes=[], has_images=True)
    product = bundle.products[0]
    assert product.id == "4001234567890"
    # method from the model is authoritative for the products shape
    assert product.identification.method == "hybrid"
    assert product.identification.confidence == 0.82
    assert product.details.attributes == {"Material": "Edelstahl"}


def test_products_array_wins_over_legacy_fields():
    raw = copy.deepcopy(SAMPLE_BUNDLE)
    raw["name"] = "Legacy name"
    bundle = normalize_result(raw, barcodes=[], has_images=False)
    assert len(bundle.products) == 1
    assert bundle.products[0].identification.name == "AquaPure Trinkflasche 750 ml"


@pytest.mark.parametrize(
    "has_images,barcodes,expected",
    [
        (True, [], "image"),
        (False, ["4001234567"], "barcode"),
        (True, ["4001234567"], "hybrid"),
    ],
)
def test_legacy_object_method_detection(has_images, barcodes, expected):
    bundle = normalize_result({"name": "Widget"}, barcodes=barcodes, has_images=has_images)
    assert bundle.products[0].identification.method == expected


def test_legacy_object_gets_defaults():
    bundle = normalize_result({"barcode": "4001234567", "brand": "Acme"}, barcodes=["4001234567"], has_images=False)
    product = bundle.products[0]
    assert product.id == "4001234567"
    assert product.identification.barcodes == ["4001234567"]
    assert product.identification.brand == "Acme"
    assert product.identification.confidence == 0.9
    lowest = product.details.pricing.lowest_price
    assert lowest.amount == 0
    assert lowest.currency == "EUR"
    assert lowest.sources == []
    assert product.ops.sync_status == "pending"
    assert product.ops.revision == 1


def test_legacy_object_keeps_given_confidence_and_details():
    bundle = normalize_result(
        {"sku": "ABC-1", "title": "Lamp", "confidence": 0.5, "description": "Desk lamp", "features": ["LED"]},
        barcodes=[],
        has_images=True,
    )
    product = bundle.products[0]
    assert product.id == "ABC-1"
    assert product.identification.name == "Lamp"
    assert product.identification.confidence == 0.5
    assert product.details.short_description == "Desk lamp"
    assert product.details.key_features == ["LED"]


def test_legacy_object_lifts_plain_image_urls():
    bundle = normalize_result(
        {
            "name": "AquaPure Flasche",
            "images": ["https://cdn.example/a.jpg", {"url": "https://cdn.example/b.jpg", "variant": "side"}, ""],
        },
        barcodes=[],
        has_images=True,
    )
    images = bundle.products[0].details.images
    assert [img.url_or_base64 for img in images] == ["https://cdn.example/a.jpg", "https://cdn.example/b.jpg"]
    assert images[0].source == "web"
    assert images[1].variant == "side"


def test_legacy_object_treats_nulls_as_missing():
    bundle = normalize_result(
        {
            "name": "AquaPure Flasche",
            "barcodes": None,
            "description": None,
            "pricing": {"lowest_price": {"amount": None, "currency": None, "sources": None}, "price_confidence": None},
            "ops": {"sync_status": None, "revision": None},
        },
        barcodes=["4001234567890"],
        has_images=False,
    )
    product = bundle.products[0]
    assert product.id == "4001234567890"
    assert product.identification.barcodes == ["4001234567890"]
    assert product.details.short_description == ""
    lowest = product.details.pricing.lowest_price
    assert (lowest.amount, lowest.currency, lowest.sources) == (0, "EUR", [])
    assert product.details.pricing.price_confidence == 0
    assert (product.ops.sync_status, product.ops.revision) == ("pending", 1)


def test_unrecognized_shape_is_rejected():
    with pytest.raises(UnrecognizedResultShape):
        normalize_result({"foo": "bar"}, barcodes=[], has_images=True)
    with pytest.raises(UnrecognizedResultShape):
        normalize_result(["not", "an", "object"], barcodes=[], has_images=True)


def test_invalid_products_fail_validation():
    raw = copy.deepcopy(SAMPLE_BUNDLE)
    raw["products"][0]["identification"]["confidence"] = 1.7
    with pytest.raises(ModelResponseError):
        normalize_result(raw, barcodes=[], has_images=True)


def test_detect_method_barcode_only_default():
    assert detect_method(False, False) == "barcode"
