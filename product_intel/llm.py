import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .errors import ConfigurationError, ModelResponseError, TransientProviderError
from .secrets import MODEL_API_KEY, SecretResolver

logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}
RETRYABLE_STATUS = {408, 409, 425, 429}

MODEL_ALIASES: Dict[str, Optional[str]] = {
    "mini": "gpt-5-mini",
    "nano": "gpt-5-nano",
    "gpt-5-mini": "gpt-5-mini",
    "gpt-5-nano": "gpt-5-nano",
    # legacy names still sent by older clients
    "gpt-5.1-mini": "gpt-5-mini",
    "gpt-5.1-nano": "gpt-5-nano",
    "gpt-5.1": "gpt-5.1",
    "standard": "gpt-5.1",
    "default": None,
}


def resolve_model(preferred: Optional[str], default: str) -> str:
    normalized = preferred.strip().lower() if isinstance(preferred, str) else ""
    if not normalized or normalized in ("default", "auto"):
        return default
    alias = MODEL_ALIASES.get(normalized)
    if alias:
        return alias
    if preferred.strip().startswith("gpt-5"):
        return preferred.strip()
    return default


@dataclass
class ToolCallRequest:
    call_id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> Dict[str, Any]:
        try:
            data = json.loads(self.arguments or "{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


@dataclass
class ModelTurn:
    model: str
    content: Optional[str] = None
    tool_calls: List[ToolCallRequest] = field(default_factory=list)
    refusal: Optional[str] = None
    raw_message: Dict[str, Any] = field(default_factory=dict)

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)

    def assistant_message(self) -> Dict[str, Any]:
        """Echo of this turn for the next request's history."""
        message: Dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.call_id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in self.tool_calls
            ]
        return message


class ChatModelClient:
    """OpenAI-compatible chat completions client with function calling."""

    def __init__(
        self,
        base_url: str,
        secrets: Optional[SecretResolver] = None,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        max_output_tokens: Optional[int] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secrets = secrets
        self._api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=timeout)

    def _get_api_key(self) -> str:
        if self._api_key:
            return self._api_key
        if self.secrets is None:
            raise ConfigurationError(f"{MODEL_API_KEY} is not configured")
        self._api_key = self.secrets.resolve(MODEL_API_KEY)
        return self._api_key

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            tool_calls = msg.get("tool_calls") if role == "assistant" else None
            if isinstance(content, str):
                cleaned_content: Any = content if content.strip() else None
            elif isinstance(content, list):
                cleaned_items = [
                    item
                    for item in content
                    if isinstance(item, dict)
                    and item.get("type")
                    and (item.get("text") or item.get("image_url"))
                ]
                cleaned_content = cleaned_items or None
            elif content is None:
                cleaned_content = None
            else:
                cleaned_content = json.dumps(content, ensure_ascii=True)
            if cleaned_content is None and not tool_calls:
                continue
            entry: Dict[str, Any] = {"role": role, "content": cleaned_content}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            if role == "tool":
                if not msg.get("tool_call_id"):
                    continue
                entry["tool_call_id"] = msg["tool_call_id"]
            sanitized.append(entry)
        return sanitized

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def complete(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[str] = None,
        response_format: Optional[dict] = None,
    ) -> ModelTurn:
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        payload: Dict[str, Any] = {"model": model, "messages": cleaned}
        if self.max_output_tokens:
            payload["max_completion_tokens"] = self.max_output_tokens
        if tools:
            payload["tools"] = tools
            if tool_choice:
                payload["tool_choice"] = tool_choice
        if response_format:
            payload["response_format"] = response_format
        headers = {"Authorization": f"Bearer {self._get_api_key()}"}
        url = f"{self.base_url}/chat/completions"
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            detail = self._extract_error_detail(exc.response)[:500]
            logger.warning("Model request failed (%s): %s", status, detail)
            if status in RETRYABLE_STATUS or status >= 500:
                raise TransientProviderError(f"Model API returned {status}: {detail}", model_used=model) from exc
            if status in (401, 403):
                raise ConfigurationError(f"Model API rejected credentials ({status})", model_used=model) from exc
            raise ModelResponseError(f"Model API returned {status}: {detail}", model_used=model) from exc
        except httpx.RequestError as exc:
            logger.warning("Model request transport error: %s", exc)
            raise TransientProviderError(f"Model API unreachable: {exc}", model_used=model) from exc
        return self._parse_turn(resp.json(), model)

    def _parse_turn(self, data: Any, requested_model: str) -> ModelTurn:
        if not isinstance(data, dict):
            raise ModelResponseError("Model response was not a JSON object", model_used=requested_model)
        choices = data.get("choices") or []
        if not choices:
            raise ModelResponseError("Model response contained no choices", model_used=requested_model)
        message = choices[0].get("message") or {}
        calls: List[ToolCallRequest] = []
        for raw in message.get("tool_calls") or []:
            function = raw.get("function") or {}
            calls.append(
                ToolCallRequest(
                    call_id=str(raw.get("id") or ""),
                    name=str(function.get("name") or ""),
                    arguments=function.get("arguments") or "{}",
                )
            )
        return ModelTurn(
            model=str(data.get("model") or requested_model),
            content=message.get("content"),
            tool_calls=calls,
            refusal=message.get("refusal"),
            raw_message=message,
        )

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
