"""Prompt text for the identification model and the pure request builder."""

import base64
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

IDENTIFY_SYSTEM = """
SYSTEM (PRODUCT INTELLIGENCE)

You identify physical products from photos and barcodes and return a complete product datasheet.
Rules:
1. Use only the supplied images, barcodes and results of the serpapi_web_search tool.
2. Run at least one serpapi_web_search call before you answer.
3. Never invent brands, prices or images.
4. If information is missing, leave the field empty and add a note to notes.unsure.
5. Answer strictly as JSON in the ProductBundle shape, no free text.
6. Write texts in {locale}; prices in {currency}.
7. Only adopt product images whose source is clearly verified.
8. Use SerpAPI engines exactly as documented (no custom parameters).
"""

BUNDLE_SHAPE_GUIDE = """
ProductBundle shape:
{
  "products": [
    {
      "id": "EAN/GTIN when known, otherwise a stable slug",
      "identification": {"method": "image|barcode|hybrid", "barcodes": [], "name": "", "brand": "", "category": "", "confidence": 0.0},
      "details": {
        "short_description": "",
        "key_features": [],
        "attributes": [{"key": "Material", "value": "100% cotton", "value_type": "string"}],
        "identifiers": {"ean": null, "gtin": null, "upc": null, "mpn": null, "sku": null},
        "images": [{"source": "web", "variant": "front", "url_or_base64": "", "notes": ""}],
        "pricing": {"lowest_price": {"amount": 0, "currency": "EUR", "sources": [{"name": "", "url": "", "price": 0, "shipping": null, "checked_at": ""}], "last_checked_iso": ""}, "price_confidence": 0.0}
      },
      "ops": {"sync_status": "pending", "revision": 1},
      "notes": {"unsure": [], "warnings": []}
    }
  ],
  "rendering": {"format": "datasheet", "datasheet_page": "", "admin_table_page": ""}
}
"""

TASK_STEPS = """
Task:
1. Analyse the attached images to recognise brand and model.
2. Use serpapi_web_search for every fact (product name, prices, merchants, images, specifications).
3. Required: start with a Google Shopping search (engine=google_shopping, num>=12) and record merchant prices with URL.
4. Required: run at least one image search via google_images or google_lens (num>=20) and keep only images at least 900px wide.
5. Use ebay or google as well when Shopping returns no prices.
6. Validate images: links must be public and unambiguous.
7. Return attributes as a list of {key, value, value_type} entries.
8. When several products are found, return each separately in products[] with a unique id (prefer EAN/GTIN).
9. pricing.lowest_price.sources needs real merchant URLs including checked_at.
10. key_features: at least 5, specific to the product.
11. images: at least 3 entries when the search returns suitable sources.
12. Record uncertainty in notes.unsure.
"""

FINALIZATION_HINT = (
    "You have reached the maximum number of search tool calls. Use only the information already "
    "gathered (images, barcodes, previous search results) and return the complete ProductBundle now. "
    "Do not request further tool calls."
)


@dataclass
class PromptImage:
    mime_type: str
    data: bytes
    filename: str = "upload"
    public_url: Optional[str] = None

    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass
class IdentifyRequest:
    messages: List[Dict[str, Any]] = field(default_factory=list)


def build_system_prompt(locale: str, currency: str = "EUR") -> str:
    return (
        IDENTIFY_SYSTEM.replace("{locale}", locale).replace("{currency}", currency).strip()
        + "\n"
        + BUNDLE_SHAPE_GUIDE
    )


def build_user_prompt(barcodes: Sequence[str], images: Sequence[PromptImage], locale: str) -> str:
    parts: List[str] = []
    if barcodes:
        parts.append(f"Barcodes: {', '.join(barcodes)}")
    else:
        parts.append("Barcodes: none provided")
    hosted = [img for img in images if img.public_url]
    if hosted:
        lines = [
            f"{idx}. {img.public_url} ({img.mime_type}, {img.filename or 'upload'})"
            for idx, img in enumerate(hosted, start=1)
        ]
        parts.append("Publicly reachable image URLs (for google_lens / google_reverse_image):\n" + "\n".join(lines))
    elif images:
        parts.append("Images are attached inline; no public image URLs are available.")
    else:
        parts.append("No images provided.")
    parts.append(TASK_STEPS.strip())
    parts.append(f"Language for texts: {locale}.")
    return "\n\n".join(parts)


def build_identify_request(
    barcodes: Sequence[str],
    images: Sequence[PromptImage],
    locale: str,
    currency: str = "EUR",
) -> IdentifyRequest:
    """Assemble the opening conversation. Pure: no I/O."""
    user_content: List[Dict[str, Any]] = [
        {"type": "image_url", "image_url": {"url": img.data_url()}} for img in images
    ]
    user_content.append({"type": "text", "text": build_user_prompt(barcodes, images, locale)})
    return IdentifyRequest(
        messages=[
            {"role": "system", "content": build_system_prompt(locale, currency)},
            {"role": "user", "content": user_content},
        ]
    )


def finalization_message() -> Dict[str, Any]:
    return {"role": "system", "content": FINALIZATION_HINT}
