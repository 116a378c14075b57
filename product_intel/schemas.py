from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


JobStatus = Literal["pending", "running", "done", "failed"]
IdentificationMethod = Literal["image", "barcode", "hybrid"]
SyncStatus = Literal["pending", "synced", "failed"]

TERMINAL_STATUSES = ("done", "failed")


class FileRef(BaseModel):
    """Pointer to an uploaded image held by the blob store."""

    uri: str
    original_name: str = "upload"
    mime_type: str = "application/octet-stream"
    size: int = 0


class JobPayload(BaseModel):
    files: List[FileRef] = Field(default_factory=list)
    barcodes: str = ""
    locale: str = "de-DE"
    model: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class JobError(BaseModel):
    code: str
    message: str

    model_config = {"extra": "allow"}


class TraceEntry(BaseModel):
    engine: str
    query: str = ""
    summary: List[Dict[str, Any]] = Field(default_factory=list)
    params: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    model_config = {"extra": "allow", "frozen": True}


class PriceSource(BaseModel):
    name: str = ""
    url: str = ""
    price: Optional[float] = None
    shipping: Optional[float] = None
    checked_at: Optional[str] = None

    model_config = {"extra": "allow"}


class LowestPrice(BaseModel):
    amount: float = 0
    currency: str = "EUR"
    sources: List[PriceSource] = Field(default_factory=list)
    last_checked_iso: Optional[str] = None

    model_config = {"extra": "allow"}


class Pricing(BaseModel):
    lowest_price: LowestPrice = Field(default_factory=LowestPrice)
    price_confidence: float = 0

    model_config = {"extra": "allow"}


class ProductImage(BaseModel):
    source: str = "web"
    variant: Optional[str] = None
    url_or_base64: str
    notes: Optional[str] = None

    model_config = {"extra": "allow"}


class Identifiers(BaseModel):
    ean: Optional[str] = None
    gtin: Optional[str] = None
    upc: Optional[str] = None
    mpn: Optional[str] = None
    sku: Optional[str] = None

    model_config = {"extra": "allow"}


class Identification(BaseModel):
    method: IdentificationMethod
    barcodes: List[str] = Field(default_factory=list)
    name: str = ""
    brand: str = ""
    category: str = ""
    confidence: float = Field(default=0.9, ge=0, le=1)

    model_config = {"extra": "allow"}


class ProductDetails(BaseModel):
    short_description: str = ""
    key_features: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    identifiers: Identifiers = Field(default_factory=Identifiers)
    images: List[ProductImage] = Field(default_factory=list)
    pricing: Pricing = Field(default_factory=Pricing)

    model_config = {"extra": "allow"}

    @field_validator("attributes", mode="before")
    @classmethod
    def _fold_attribute_list(cls, value: Any) -> Any:
        # Models are asked for [{key, value, value_type}]; storage uses a flat map.
        if isinstance(value, list):
            folded: Dict[str, Any] = {}
            for entry in value:
                if not isinstance(entry, dict):
                    continue
                key = str(entry.get("key") or "").strip()
                if not key:
                    continue
                raw = entry.get("value")
                folded[key] = "" if raw is None else raw
            return folded
        if value is None:
            return {}
        return value


class ProductOps(BaseModel):
    sync_status: SyncStatus = "pending"
    revision: int = Field(default=1, ge=0)
    last_saved_iso: Optional[str] = None
    last_synced_iso: Optional[str] = None

    model_config = {"extra": "allow"}


class ProductNotes(BaseModel):
    unsure: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}


class Product(BaseModel):
    id: str
    identification: Identification
    details: ProductDetails = Field(default_factory=ProductDetails)
    ops: ProductOps = Field(default_factory=ProductOps)
    notes: ProductNotes = Field(default_factory=ProductNotes)

    model_config = {"extra": "allow"}


class Rendering(BaseModel):
    format: str = "datasheet"
    datasheet_page: str = ""
    admin_table_page: str = ""

    model_config = {"extra": "allow"}


class ProductBundle(BaseModel):
    products: List[Product]
    rendering: Optional[Rendering] = None

    model_config = {"extra": "allow"}


class Job(BaseModel):
    id: str
    status: JobStatus
    attempts: int = 0
    payload: JobPayload = Field(default_factory=JobPayload)
    result: Optional[ProductBundle] = None
    trace: List[TraceEntry] = Field(default_factory=list)
    error: Optional[JobError] = None
    last_error: Optional[JobError] = None
    model_used: Optional[str] = None
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    model_config = {"protected_namespaces": ()}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_status_view(self) -> Dict[str, Any]:
        view: Dict[str, Any] = {
            "id": self.id,
            "status": self.status,
            "attempts": self.attempts,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "model": self.model_used or self.payload.model,
        }
        if self.status == "done":
            view["result"] = self.result.model_dump() if self.result else None
            view["trace"] = [entry.model_dump() for entry in self.trace]
        if self.status == "failed":
            view["error"] = self.error.model_dump() if self.error else None
            view["trace"] = [entry.model_dump() for entry in self.trace]
        return view


class SubmitJobResponse(BaseModel):
    ok: bool = True
    jobId: str
