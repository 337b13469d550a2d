"""Success/error envelopes returned by every tool."""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from salesforce_mcp.errors import SalesforceMcpError, translate_remote_error

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ToolContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    tool: str
    operation: Optional[str] = None
    timestamp: str = Field(default_factory=_utc_now)

    @classmethod
    def create(cls, tool: str, operation: Optional[str] = None) -> "ToolContext":
        return cls(tool=tool, operation=operation)


class SuccessEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: Literal[True] = True
    data: Any
    context: ToolContext


class ErrorEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: Literal[False] = False
    error: Dict[str, Any]
    context: ToolContext


def _to_json(envelope: BaseModel) -> str:
    return json.dumps(envelope.model_dump(), indent=2, default=str)


def error_detail(error: BaseException) -> Dict[str, Any]:
    """Describe ``error`` without rewording it."""
    error = translate_remote_error(error)
    if isinstance(error, SalesforceMcpError):
        return error.to_dict()
    return {
        "type": type(error).__name__,
        "message": str(error) or type(error).__name__,
        "errorCode": "UNKNOWN_ERROR",
    }


def success_envelope(data: Any, context: ToolContext) -> SuccessEnvelope:
    return SuccessEnvelope(data=data, context=context)


def error_envelope(error: BaseException, context: ToolContext) -> ErrorEnvelope:
    return ErrorEnvelope(error=error_detail(error), context=context)


def format_success(data: Any, context: ToolContext) -> str:
    return _to_json(success_envelope(data, context))


def format_error(error: BaseException, context: ToolContext) -> str:
    return _to_json(error_envelope(error, context))
