"""
Queue message variants and dispatch.

Every payload carries a `type` tag. Parsing goes through one discriminated
union so an unknown or malformed payload fails validation up front, and the
MessageRouter maps each variant to exactly one handler.
"""

import logging
from typing import Annotated, Any, Awaitable, Callable, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

logger = logging.getLogger(__name__)


class FetchChunkMessage(BaseModel):
    type: Literal["fetch-chunk"] = "fetch-chunk"
    job_id: str
    chunk_index: int = Field(ge=0)
    accounts: list[str]
    days: int = Field(ge=1)


class AnalyzeMessage(BaseModel):
    type: Literal["analyze"] = "analyze"
    job_id: str
    attempt: int = Field(default=1, ge=1)


ScanMessage = Annotated[Union[FetchChunkMessage, AnalyzeMessage], Field(discriminator="type")]

_message_adapter = TypeAdapter(ScanMessage)


def parse_message(payload: dict[str, Any]) -> Union[FetchChunkMessage, AnalyzeMessage]:
    """Validate a raw payload into its message variant. Raises pydantic.ValidationError."""
    return _message_adapter.validate_python(payload)


Handler = Callable[[Any], Awaitable[None]]


class MessageRouter:
    """Maps message variants to handlers."""

    def __init__(self):
        self._handlers: dict[type, Handler] = {}

    def register(self, message_type: type, handler: Handler) -> None:
        if message_type in self._handlers:
            raise ValueError(f"Handler already registered for {message_type.__name__}")
        self._handlers[message_type] = handler

    async def dispatch(self, message: BaseModel) -> None:
        handler = self._handlers.get(type(message))
        if handler is None:
            raise LookupError(f"No handler registered for {type(message).__name__}")
        await handler(message)
