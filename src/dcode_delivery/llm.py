from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_DEFAULT_TIMEOUT: int = 120
_DEFAULT_MAX_RETRIES: int = 3


class SupportsInvoke(Protocol):
    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(slots=True)
class StructuredOutputAdapter(Generic[ModelT]):
    """Wraps a structured-output runnable and validates what it returns."""

    schema: type[ModelT]
    runnable: SupportsInvoke

    def invoke(self, prompt: str) -> ModelT:
        """Invoke the model and return a validated schema instance.

        Raises:
            RuntimeError: If the model returns unparseable or invalid output.
        """
        raw_output = self.runnable.invoke(prompt)
        return normalize_structured_output(raw_output=raw_output, schema=self.schema)


def ensure_openai_api_key(project_dir: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading the project's ``.env`` first if present.

    Raises:
        RuntimeError: If the key is unavailable.
    """
    root = project_dir if project_dir is not None else Path.cwd()
    env_path = root / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for agent execution")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    max_retries: int = _DEFAULT_MAX_RETRIES,
    project_dir: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI client with a validated API key.

    Raises:
        ValueError: If *model_name* is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    ensure_openai_api_key(project_dir=project_dir)
    return ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=timeout,
        max_retries=max_retries,
    )


def normalize_structured_output(*, raw_output: Any, schema: type[ModelT]) -> ModelT:
    """Coerce raw structured output into a validated *schema* instance.

    Accepts an ``include_raw`` envelope (``{"parsed", "parsing_error", "raw"}``),
    a pydantic model of any type, a plain dict, or a JSON string.

    Raises:
        RuntimeError: If the output cannot be validated against *schema*.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        parsing_error = payload.get("parsing_error")
        if parsing_error is not None:
            raise RuntimeError(f"Structured output parsing failed for {schema.__name__}: {parsing_error!r}")
        payload = payload.get("parsed")
        if payload is None:
            raise RuntimeError(f"Structured output returned no parsed payload for {schema.__name__}")

    if isinstance(payload, schema):
        return payload

    if isinstance(payload, BaseModel):
        candidate = payload.model_dump(mode="json")
    elif isinstance(payload, dict):
        candidate = payload
    elif isinstance(payload, str):
        try:
            candidate = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"Structured output for {schema.__name__} is not valid JSON") from exc
    else:
        raise RuntimeError(
            f"Structured output for {schema.__name__} returned unsupported payload type {type(payload).__name__}"
        )

    try:
        return schema.model_validate(candidate)
    except ValidationError as exc:
        raise RuntimeError(f"Structured output validation failed for {schema.__name__}: {exc}") from exc


def get_structured_chat_model(
    *,
    model_name: str,
    schema: type[ModelT],
    temperature: float = 0.0,
    timeout: int = _DEFAULT_TIMEOUT,
    project_dir: Path | None = None,
) -> StructuredOutputAdapter[ModelT]:
    """Bind *schema* to a chat model with strict function-calling output."""
    model = get_chat_model(
        model_name=model_name,
        temperature=temperature,
        timeout=timeout,
        project_dir=project_dir,
    )
    runnable = model.with_structured_output(schema, method="function_calling", strict=True)
    return StructuredOutputAdapter(schema=schema, runnable=runnable)
