import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .config import AppSettings
from .errors import BarcodeLimitExceeded, ImagePayloadTooLarge, InvalidIdentificationInput

BARCODE_SPLIT_RE = re.compile(r"[\s,;|]+")


@dataclass(frozen=True)
class ValidatedInput:
    barcodes: List[str] = field(default_factory=list)
    image_count: int = 0
    image_bytes: int = 0

    @property
    def has_images(self) -> bool:
        return self.image_count > 0

    @property
    def has_barcodes(self) -> bool:
        return bool(self.barcodes)


def parse_barcodes(raw: Optional[str], max_count: int) -> List[str]:
    if not raw:
        return []
    tokens = [token.strip() for token in BARCODE_SPLIT_RE.split(raw)]
    barcodes = [token for token in tokens if token]
    if len(barcodes) > max_count:
        raise BarcodeLimitExceeded(
            f"{len(barcodes)} barcodes exceed the limit of {max_count}",
            meta={"max": max_count, "count": len(barcodes)},
        )
    return barcodes


def check_image_budget(sizes: Iterable[int], max_bytes: int) -> int:
    total = 0
    for size in sizes:
        total += max(0, int(size or 0))
        if total > max_bytes:
            raise ImagePayloadTooLarge(
                f"Image payload exceeds {max_bytes} bytes",
                meta={"max_bytes": max_bytes},
            )
    return total


def validate_request(
    barcodes: Optional[str],
    image_sizes: Iterable[int],
    settings: AppSettings,
) -> ValidatedInput:
    """Pre-flight checks shared by the synchronous route and the job runner.

    Pure and deterministic: raises before any blob, model or search access.
    """
    sizes = list(image_sizes)
    if not sizes and not (barcodes or "").strip():
        raise InvalidIdentificationInput("Provide at least one image or barcode.")
    barcode_list = parse_barcodes(barcodes, settings.max_barcode_count)
    total = check_image_budget(sizes, settings.max_image_payload_bytes)
    return ValidatedInput(barcodes=barcode_list, image_count=len(sizes), image_bytes=total)
