import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "PRODUCT_INTEL_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}
SECRET_FIELDS = ("model_api_key", "serpapi_api_key")


class AppSettings(BaseModel):
    # Generative model (OpenAI-compatible chat completions)
    model_base_url: str = "https://api.openai.com/v1"
    model_api_key: Optional[str] = None
    identify_model: str = "gpt-5-mini"
    model_timeout_s: float = 120.0
    model_max_output_tokens: int = 8192

    # Search tool
    serpapi_api_key: Optional[str] = None
    serpapi_base_url: str = "https://serpapi.com/search.json"
    serpapi_gl: str = "de"
    serpapi_hl: str = "de"
    serpapi_google_domain: str = "google.de"
    serpapi_cc: str = "DE"
    serpapi_market: str = "de-DE"
    serpapi_kl: str = "de-de"
    serpapi_ebay_domain: str = "ebay.de"
    serpapi_summary_limit: int = 8
    min_image_width: int = 900
    min_image_height: int = 900

    # Input limits
    max_barcode_count: int = 10000
    max_image_payload_bytes: int = 25 * 1024 * 1024
    max_image_files: int = 25
    max_image_file_bytes: int = 8 * 1024 * 1024

    # Orchestration
    max_tool_iterations: int = Field(default=8, ge=1)
    require_search_call: bool = True
    default_locale: str = "de-DE"
    default_currency: str = "EUR"

    # Job runner
    job_concurrency: int = Field(default=3, ge=1)
    job_max_attempts: int = Field(default=3, ge=1)
    retry_backoff_base_s: float = 1.0
    retry_backoff_max_s: float = 30.0

    # Storage
    database_path: str = "product_intel.db"
    blob_dir: str = "blobs"
    # External base URL of this service; saved images are then reachable under /blobs/.
    public_base_url: Optional[str] = None
    secrets_dir: Optional[str] = None

    host: str = "0.0.0.0"
    port: int = 8080

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in SECRET_FIELDS:
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


_INT_FIELDS = (
    "model_max_output_tokens",
    "serpapi_summary_limit",
    "max_barcode_count",
    "max_image_payload_bytes",
    "max_image_files",
    "max_image_file_bytes",
    "max_tool_iterations",
    "job_concurrency",
    "job_max_attempts",
    "port",
)
_FLOAT_FIELDS = ("model_timeout_s", "retry_backoff_base_s", "retry_backoff_max_s")
_BOOL_FIELDS = ("require_search_call",)


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "model_base_url": os.getenv("MODEL_BASE_URL"),
        "model_api_key": os.getenv("OPENAI_API_KEY"),
        "identify_model": os.getenv("IDENTIFY_MODEL"),
        "model_timeout_s": os.getenv("MODEL_TIMEOUT_S"),
        "model_max_output_tokens": os.getenv("MODEL_MAX_OUTPUT_TOKENS"),
        "serpapi_api_key": os.getenv("SERPAPI_KEY"),
        "serpapi_gl": os.getenv("SERPAPI_GL"),
        "serpapi_hl": os.getenv("SERPAPI_HL"),
        "serpapi_google_domain": os.getenv("SERPAPI_GOOGLE_DOMAIN"),
        "serpapi_cc": os.getenv("SERPAPI_CC"),
        "serpapi_market": os.getenv("SERPAPI_MARKET"),
        "serpapi_kl": os.getenv("SERPAPI_KL"),
        "serpapi_ebay_domain": os.getenv("SERPAPI_EBAY_DOMAIN"),
        "max_barcode_count": os.getenv("MAX_BARCODE_COUNT"),
        "max_image_payload_bytes": os.getenv("MAX_IMAGE_PAYLOAD_BYTES"),
        "max_tool_iterations": os.getenv("MAX_TOOL_ITERATIONS"),
        "require_search_call": os.getenv("REQUIRE_SEARCH_CALL"),
        "default_locale": os.getenv("DEFAULT_LOCALE"),
        "default_currency": os.getenv("DEFAULT_PRICE_CURRENCY"),
        "job_concurrency": os.getenv("ID_QUEUE_CONCURRENCY"),
        "job_max_attempts": os.getenv("ID_JOB_MAX_ATTEMPTS"),
        "retry_backoff_base_s": os.getenv("RETRY_BACKOFF_BASE_S"),
        "retry_backoff_max_s": os.getenv("RETRY_BACKOFF_MAX_S"),
        "database_path": os.getenv("DATABASE_PATH"),
        "blob_dir": os.getenv("BLOB_DIR"),
        "public_base_url": os.getenv("PUBLIC_BASE_URL"),
        "secrets_dir": os.getenv("SECRETS_DIR"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_FIELDS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_FIELDS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    for key in _BOOL_FIELDS:
        if key in cleaned:
            cleaned[key] = str(cleaned[key]).lower() in ENV_OVERRIDE_TRUE
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _load_from_env()
    file_data = _read_config_file(config_path or CONFIG_PATH)
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = {**file_data, **env_data}
    else:
        merged = {**env_data, **file_data}
    for key in SECRET_FIELDS:
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2))
