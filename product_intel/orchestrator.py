import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import AppSettings
from .errors import IdentificationCancelled, IdentificationError, IterationExceeded, ModelResponseError
from .llm import ModelTurn, ToolCallRequest
from .prompts import IdentifyRequest, finalization_message
from .schemas import TraceEntry
from .serpapi import SERPAPI_TOOL_DEFINITION, TOOL_NAME

logger = logging.getLogger("uvicorn.error")

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class OrchestrationResult:
    output: Any
    trace: List[TraceEntry] = field(default_factory=list)
    model_used: str = ""


def parse_final_answer(turn: ModelTurn) -> Any:
    if turn.refusal:
        raise ModelResponseError(f"Model refusal: {turn.refusal}")
    text = (turn.content or "").strip()
    if not text:
        raise ModelResponseError("Model response did not contain a final answer")
    text = _FENCE_RE.sub("", text).strip()
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ModelResponseError(f"Model answer is not valid JSON: {exc}") from exc


def tool_result_message(call: ToolCallRequest, entry: TraceEntry) -> Dict[str, Any]:
    return {
        "role": "tool",
        "tool_call_id": call.call_id,
        "content": json.dumps(
            {"engine": entry.engine, "query": entry.query, "summary": entry.summary, "error": entry.error},
            ensure_ascii=False,
        ),
    }


class ToolCallingOrchestrator:
    """Drives the model <-> search conversation until a final answer or the iteration cap.

    A turn that requests tools is never treated as final, even when it also carries
    content. On the last permitted iteration a finalization hint is appended and the
    model is asked not to call tools; any calls it still makes are executed and counted.
    """

    def __init__(self, model_client, search_client, settings: AppSettings):
        self.model_client = model_client
        self.search_client = search_client
        self.settings = settings

    async def run(
        self,
        request: IdentifyRequest,
        model: str,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OrchestrationResult:
        messages: List[Dict[str, Any]] = list(request.messages)
        trace: List[TraceEntry] = []
        model_used = model
        max_iterations = self.settings.max_tool_iterations
        try:
            for iteration in range(max_iterations):
                last = iteration == max_iterations - 1
                if last:
                    messages.append(finalization_message())
                self._raise_if_cancelled(cancel_event)
                turn = await self._call_model(model, messages, last, cancel_event)
                model_used = turn.model or model_used
                if turn.wants_tools:
                    logger.info(
                        "Model %s requested %d tool call(s) (iteration %d/%d)",
                        model_used,
                        len(turn.tool_calls),
                        iteration + 1,
                        max_iterations,
                    )
                    messages.append(turn.assistant_message())
                    for call in turn.tool_calls:
                        self._raise_if_cancelled(cancel_event)
                        entry = await self._execute(call)
                        trace.append(entry)
                        messages.append(tool_result_message(call, entry))
                    continue
                output = parse_final_answer(turn)
                if self.settings.require_search_call and not trace:
                    raise ModelResponseError("Model answered without running any search call")
                logger.debug("Model %s answered after %d iteration(s)", model_used, iteration + 1)
                return OrchestrationResult(output=output, trace=trace, model_used=model_used)
            raise IterationExceeded(
                f"Tool-calling loop exceeded {max_iterations} iterations without a final answer"
            )
        except IdentificationError as exc:
            exc.trace = list(trace)
            exc.model_used = model_used
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Orchestration failed with model %s", model_used)
            raise IdentificationError(
                f"{type(exc).__name__}: {exc}", trace=list(trace), model_used=model_used
            ) from exc

    async def _execute(self, call: ToolCallRequest) -> TraceEntry:
        if call.name != TOOL_NAME:
            args = call.parsed_arguments()
            return TraceEntry(
                engine=str(args.get("engine") or ""),
                query=str(args.get("query") or ""),
                error=f"Unknown tool: {call.name}",
            )
        entry = await self.search_client.execute_tool_call(call.arguments)
        if entry.error:
            logger.warning("Search tool call failed (%s): %s", entry.engine, entry.error)
        return entry

    async def _call_model(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        last: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> ModelTurn:
        call = self.model_client.complete(
            model=model,
            messages=messages,
            tools=[SERPAPI_TOOL_DEFINITION],
            tool_choice="none" if last else "auto",
            response_format={"type": "json_object"},
        )
        if cancel_event is None:
            return await call
        model_task = asyncio.ensure_future(call)
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({model_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (model_task, cancel_task):
                if not task.done():
                    task.cancel()
        if model_task in done:
            return model_task.result()
        try:
            await model_task
        except asyncio.CancelledError:
            pass
        raise IdentificationCancelled("Identification cancelled by caller")

    @staticmethod
    def _raise_if_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise IdentificationCancelled("Identification cancelled by caller")
