import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from .config import AppSettings
from .errors import ConfigurationError, TransientProviderError
from .schemas import TraceEntry
from .secrets import SEARCH_API_KEY, SecretResolver

logger = logging.getLogger("uvicorn.error")

TOOL_NAME = "serpapi_web_search"
ALLOWED_ENGINES = [
    "google",
    "google_shopping",
    "google_images",
    "google_lens",
    "google_reverse_image",
    "bing",
    "bing_images",
    "duckduckgo",
    "yahoo",
    "yandex",
    "ebay",
    "walmart",
    "home_depot",
    "naver",
]
GOOGLE_ENGINES = {"google", "google_images", "google_reverse_image", "google_shopping", "google_lens"}
MAX_NUM = 50

# Result list per engine, in lookup order.
RESULT_KEYS: Dict[str, str] = {
    "google_shopping": "shopping_results",
    "google": "organic_results",
    "google_images": "images_results",
    "google_lens": "visual_matches",
    "google_reverse_image": "image_results",
    "bing_images": "image_results",
    "duckduckgo": "organic_results",
    "ebay": "shopping_results",
}
IMAGE_ENGINES = {"google_images", "google_lens", "google_reverse_image", "bing_images"}

SERPAPI_TOOL_DEFINITION: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": TOOL_NAME,
        "description": "Fetches real-time product data via SerpAPI using official engines only.",
        "parameters": {
            "type": "object",
            "properties": {
                "engine": {"type": "string", "enum": list(ALLOWED_ENGINES)},
                "query": {"type": "string"},
                "num": {"type": ["number", "null"], "minimum": 1, "maximum": 100},
            },
            "required": ["engine", "query", "num"],
            "additionalProperties": False,
        },
    },
}


class SearchToolError(Exception):
    pass


def build_search_params(engine: str, query: Optional[str], num: Any = None) -> Dict[str, Any]:
    trimmed = (query or "").strip()
    if not trimmed:
        raise SearchToolError("SerpAPI query is required")
    params: Dict[str, Any] = {}
    if engine == "google_lens":
        params["url"] = trimmed
        params["type"] = "products"
    elif engine == "google_reverse_image":
        params["image_url"] = trimmed
    else:
        params["q"] = trimmed
    if num:
        try:
            params["num"] = min(max(1, int(float(num))), MAX_NUM)
        except (TypeError, ValueError):
            pass
    return params


def _parse_dimension(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        digits = re.sub(r"[^\d]", "", value)
        return int(digits) if digits else None
    return None


def extract_image_meta(entry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    url = (
        entry.get("original")
        or entry.get("image")
        or entry.get("original_image")
        or entry.get("link")
        or entry.get("thumbnail")
        or entry.get("image_url")
    )
    if not url:
        return None
    width = (
        _parse_dimension(entry.get("original_width"))
        or _parse_dimension(entry.get("width"))
        or _parse_dimension(entry.get("thumbnail_width"))
    )
    height = (
        _parse_dimension(entry.get("original_height"))
        or _parse_dimension(entry.get("height"))
        or _parse_dimension(entry.get("thumbnail_height"))
    )
    return {"url": url, "width": width, "height": height}


def _is_low_res(meta: Optional[Dict[str, Any]], min_width: int, min_height: int) -> bool:
    if not meta:
        return False
    if meta.get("width") and meta["width"] < min_width:
        return True
    if meta.get("height") and meta["height"] < min_height:
        return True
    return False


def _summary_item(engine: str, entry: Dict[str, Any], image_meta: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "title": entry.get("title") or entry.get("product_title") or entry.get("name") or entry.get("heading") or "Untitled",
        "price": entry.get("price") or entry.get("extracted_price"),
        "source": entry.get("source") or entry.get("displayed_link") or entry.get("merchant") or entry.get("store") or engine,
        "url": (image_meta or {}).get("url") or entry.get("link") or entry.get("product_link") or entry.get("url"),
        "thumbnail": entry.get("thumbnail") or entry.get("image") or (image_meta or {}).get("url"),
        "snippet": entry.get("snippet") or entry.get("description") or entry.get("excerpt"),
        "image_meta": image_meta,
    }


def summarize_entries(
    engine: str,
    data: Optional[Dict[str, Any]],
    limit: int = 8,
    min_width: int = 900,
    min_height: int = 900,
) -> List[Dict[str, Any]]:
    """Condense a raw SerpAPI response into at most `limit` snippets.

    Low-resolution images are dropped; image engines fall back to the unfiltered
    list when filtering leaves nothing.
    """
    if not data:
        return []
    key = RESULT_KEYS.get(engine, "organic_results")
    entries = data.get(key)
    if not isinstance(entries, list):
        entries = data.get("organic_results") if key != "organic_results" else None
    if not isinstance(entries, list):
        return []
    entries = [entry for entry in entries[:limit] if isinstance(entry, dict)]
    items: List[Dict[str, Any]] = []
    for entry in entries:
        meta = extract_image_meta(entry)
        if _is_low_res(meta, min_width, min_height):
            continue
        items.append(_summary_item(engine, entry, meta))
    if not items and engine in IMAGE_ENGINES:
        items = [_summary_item(engine, entry, extract_image_meta(entry)) for entry in entries]
    return items


class SerpApiClient:
    def __init__(
        self,
        settings: AppSettings,
        secrets: Optional[SecretResolver] = None,
        api_key: Optional[str] = None,
    ):
        self.settings = settings
        self.secrets = secrets
        self._api_key = api_key
        self.base_url = settings.serpapi_base_url
        self.client = httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def _get_api_key(self) -> str:
        if self._api_key:
            return self._api_key
        if self.secrets is None:
            raise ConfigurationError(f"{SEARCH_API_KEY} is not configured")
        self._api_key = self.secrets.resolve(SEARCH_API_KEY)
        return self._api_key

    def default_params(self, engine: str) -> Dict[str, Any]:
        s = self.settings
        if engine in GOOGLE_ENGINES:
            return {"gl": s.serpapi_gl, "hl": s.serpapi_hl, "google_domain": s.serpapi_google_domain}
        if engine in ("bing", "bing_images"):
            return {"cc": s.serpapi_cc, "mkt": s.serpapi_market}
        if engine == "duckduckgo":
            return {"kl": s.serpapi_kl}
        if engine == "ebay":
            return {"ebay_domain": s.serpapi_ebay_domain}
        return {}

    async def search(self, engine: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if engine not in ALLOWED_ENGINES:
            raise SearchToolError(f"Unsupported SerpAPI engine: {engine}")
        final_params = {
            **self.default_params(engine),
            **params,
            "engine": engine,
            "api_key": self._get_api_key(),
            "output": "json",
        }
        final_params = {k: str(v) for k, v in final_params.items() if v is not None}
        try:
            resp = await self.client.get(self.base_url, params=final_params)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            body = exc.response.text[:500]
            logger.warning("SerpAPI request failed (%s): %s", status, body)
            if status == 429 or status >= 500:
                raise TransientProviderError(f"SerpAPI request failed ({status}): {body}") from exc
            raise SearchToolError(f"SerpAPI request failed ({status}): {body}") from exc
        except httpx.RequestError as exc:
            logger.warning("SerpAPI transport error: %s", exc)
            raise TransientProviderError(f"SerpAPI unreachable: {exc}") from exc
        data = resp.json()
        if isinstance(data, dict) and data.get("error"):
            raise SearchToolError(f"SerpAPI error: {data['error']}")
        return data

    async def execute_tool_call(self, arguments: Any) -> TraceEntry:
        """Run one model-issued search; failures are recorded on the trace entry."""
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments or "{}")
            except ValueError:
                arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        engine = str(arguments.get("engine") or "")
        query = str(arguments.get("query") or "")
        params: Dict[str, Any] = {}
        try:
            if engine not in ALLOWED_ENGINES:
                raise SearchToolError(f"Engine {engine or '<missing>'} is not supported by the search tool")
            params = build_search_params(engine, query, arguments.get("num"))
            raw = await self.search(engine, params)
        except (SearchToolError, TransientProviderError) as exc:
            return TraceEntry(engine=engine, query=query, params=params, summary=[], error=str(exc))
        summary = summarize_entries(
            engine,
            raw,
            limit=self.settings.serpapi_summary_limit,
            min_width=self.settings.min_image_width,
            min_height=self.settings.min_image_height,
        )
        return TraceEntry(engine=engine, query=query, params=params, summary=summary)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
