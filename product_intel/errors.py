from typing import Any, Dict, List, Optional


class IdentificationError(Exception):
    """Base error for the identification pipeline.

    Carries the public error code, the HTTP status the synchronous route maps it to,
    whether the job runner may retry it, and the partial tool trace / model id of the
    orchestration run that raised it.
    """

    code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False

    def __init__(
        self,
        message: str = "",
        *,
        trace: Optional[List[Any]] = None,
        model_used: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.trace: List[Any] = list(trace or [])
        self.model_used = model_used
        self.meta: Dict[str, Any] = dict(meta or {})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.meta:
            payload["meta"] = self.meta
        return payload


class InvalidIdentificationInput(IdentificationError):
    code = "INVALID_INPUT"
    http_status = 400


class BarcodeLimitExceeded(IdentificationError):
    code = "BARCODE_LIMIT_EXCEEDED"
    http_status = 400


class ImagePayloadTooLarge(IdentificationError):
    code = "IMAGE_PAYLOAD_LIMIT_EXCEEDED"
    http_status = 413


class IterationExceeded(IdentificationError):
    code = "TOOL_ITERATION_LIMIT"
    http_status = 503


class TransientProviderError(IdentificationError):
    """Network, rate-limit or upstream 5xx failure. Safe to retry."""

    code = "TRANSIENT_PROVIDER_ERROR"
    http_status = 502
    retryable = True


class ModelResponseError(IdentificationError):
    code = "MODEL_RESPONSE_INVALID"
    http_status = 502


class UnrecognizedResultShape(IdentificationError):
    code = "UNRECOGNIZED_RESULT_SHAPE"
    http_status = 502


class ConfigurationError(IdentificationError):
    code = "CONFIGURATION_ERROR"
    http_status = 500


class IdentificationCancelled(IdentificationError):
    code = "CANCELLED"
    http_status = 499


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class StateConflictError(RuntimeError):
    """Raised when a job transition is not allowed from its current status."""

    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


def error_payload(exc: BaseException) -> Dict[str, Any]:
    """Best-effort {code, message} for any exception."""
    if isinstance(exc, IdentificationError):
        return exc.to_payload()
    message = str(exc) or type(exc).__name__
    return {"code": IdentificationError.code, "message": f"{type(exc).__name__}: {message}"[:1000]}
