import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .config import AppSettings
from .errors import IdentificationError
from .llm import resolve_model
from .normalizer import normalize_result
from .orchestrator import ToolCallingOrchestrator
from .pricing import ensure_price_coverage
from .prompts import PromptImage, build_identify_request
from .schemas import ProductBundle, TraceEntry
from .validator import ValidatedInput, validate_request

logger = logging.getLogger("uvicorn.error")


@dataclass
class ImageInput:
    filename: str
    mime_type: str
    data: bytes
    public_url: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class IdentificationResult:
    bundle: ProductBundle
    trace: List[TraceEntry] = field(default_factory=list)
    model_used: str = ""


class IdentificationPipeline:
    """Validator -> orchestrator -> normalizer -> price backfill.

    Shared by the synchronous route and the job runner so both paths apply the
    same limits and produce the same result shape.
    """

    def __init__(self, settings: AppSettings, orchestrator: ToolCallingOrchestrator):
        self.settings = settings
        self.orchestrator = orchestrator

    def validate(self, barcodes: Optional[str], image_sizes: Sequence[int]) -> ValidatedInput:
        return validate_request(barcodes, image_sizes, self.settings)

    def resolve_model(self, override: Optional[str]) -> str:
        return resolve_model(override, self.settings.identify_model)

    async def run(
        self,
        validated: ValidatedInput,
        images: Sequence[ImageInput],
        locale: Optional[str] = None,
        model_override: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IdentificationResult:
        locale = locale or self.settings.default_locale
        currency = self.settings.default_currency
        model = self.resolve_model(model_override)
        request = build_identify_request(
            validated.barcodes,
            [PromptImage(img.mime_type, img.data, img.filename, img.public_url) for img in images],
            locale,
            currency,
        )
        outcome = await self.orchestrator.run(request, model, cancel_event=cancel_event)
        try:
            bundle = normalize_result(
                outcome.output,
                barcodes=validated.barcodes,
                has_images=validated.has_images,
                currency=currency,
            )
        except IdentificationError as exc:
            exc.trace = list(outcome.trace)
            exc.model_used = outcome.model_used
            raise
        products = ensure_price_coverage(bundle.products, outcome.trace, currency)
        bundle = bundle.model_copy(update={"products": products})
        logger.info(
            "Identified %d product(s) with %s using %d search call(s)",
            len(products),
            outcome.model_used,
            len(outcome.trace),
        )
        return IdentificationResult(bundle=bundle, trace=list(outcome.trace), model_used=outcome.model_used)
