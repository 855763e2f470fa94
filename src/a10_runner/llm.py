from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .settings import load_secret

logger = logging.getLogger(__name__)

ReplyT = TypeVar("ReplyT", bound=BaseModel)

LLM_TIMEOUT_SECONDS = 120


class SupportsAinvoke(Protocol):
    async def ainvoke(self, input: Any) -> Any:  # noqa: ANN401
        ...


def coerce_reply(raw_output: Any, schema: type[ReplyT]) -> ReplyT:
    """Turn a ``with_structured_output(include_raw=True)`` answer into ``schema``.

    Raises:
        RuntimeError: If the model reported a parse error or the reply does not validate.
    """
    reply = raw_output
    if isinstance(reply, dict) and "parsing_error" in reply:
        if reply["parsing_error"] is not None:
            raise RuntimeError(f"{schema.__name__} reply could not be parsed: {reply['parsing_error']!r}")
        reply = reply.get("parsed")
    if isinstance(reply, schema):
        return reply
    if isinstance(reply, BaseModel):
        reply = reply.model_dump(mode="json")
    if not isinstance(reply, dict):
        raise RuntimeError(f"{schema.__name__} reply has unsupported payload type {type(reply).__name__}")
    try:
        return schema.model_validate(reply)
    except ValidationError as exc:
        raise RuntimeError(f"{schema.__name__} reply failed validation: {exc}") from exc


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ReplyT]):
    """A structured-output runnable whose answers are validated against ``schema``."""

    schema: type[ReplyT]
    runnable: SupportsAinvoke

    async def ainvoke(self, prompt: str) -> ReplyT:
        return coerce_reply(await self.runnable.ainvoke(prompt), self.schema)


def openai_api_key_available() -> bool:
    try:
        load_secret("OPENAI_API_KEY", "llm generator backend")
    except RuntimeError:
        return False
    return True


def get_structured_chat_model(*, model_name: str, schema: type[ReplyT]) -> StructuredOutputAdapter[ReplyT]:
    """Build a ChatOpenAI adapter constrained to ``schema`` via function calling.

    Raises:
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    api_key = load_secret("OPENAI_API_KEY", "llm generator backend")
    model = ChatOpenAI(model=model_name, temperature=0.0, timeout=LLM_TIMEOUT_SECONDS, max_retries=2, api_key=api_key)
    runnable = model.with_structured_output(schema, method="function_calling", include_raw=True)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
