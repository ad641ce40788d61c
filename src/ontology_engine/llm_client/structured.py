"""
Structured model calls

Wraps an LLM transport with prompt -> JSON -> pydantic validation, verbatim
conversation logging and token/duration accounting. Model output is coerced
where the structure is recoverable; anything else raises MalformedOutputError,
which callers treat as a single-item failure.
"""
from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from ..models.ontology import LLMConversation
from ..utils import LLMError, MalformedOutputError, OntologyEngineError, get_logger
from .bedrock_client import BaseLLMClient

logger = get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def scalar_to_text(value: Any) -> str:
    """Render a JSON scalar the way a human would type it"""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if value is None:
        return ""
    return str(value)


class LLMOutput(BaseModel):
    """Base for model response schemas; unknown keys are ignored"""
    model_config = ConfigDict(extra="ignore")


class FlexibleEnumValue(LLMOutput):
    """
    An enum value entry. Accepts a bare string/number/bool in place of the
    object, and a number/bool in place of the string ``value``.
    """
    value: str
    label: str = ""
    description: str = ""
    category: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _wrap_scalar(cls, data: Any) -> Any:
        if isinstance(data, (str, int, float, bool)):
            return {"value": data}
        return data

    @field_validator("value", mode="before")
    @classmethod
    def _value_as_text(cls, value: Any) -> str:
        return scalar_to_text(value)

    @field_validator("category", mode="before")
    @classmethod
    def _normalize_category(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value).strip().lower().replace(" ", "_").replace("-", "_")


def extract_json(content: str) -> Union[Dict[str, Any], list]:
    """
    Pull the JSON document out of a model reply: the whole reply, a fenced
    block, or the outermost brace/bracket span.
    """
    text = (content or "").strip()
    if not text:
        raise MalformedOutputError("empty model response", raw_content=content)

    candidates = [text]
    candidates.extend(m.strip() for m in _FENCE_RE.findall(text))
    for open_char, close_char in (("{", "}"), ("[", "]")):
        start, end = text.find(open_char), text.rfind(close_char)
        if start != -1 and end > start:
            candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    raise MalformedOutputError("model response did not contain valid JSON", raw_content=content)


@dataclass
class ClassificationResult(Generic[T]):
    data: T
    prompt_tokens: int
    completion_tokens: int
    duration_ms: int
    status: str = "success"
    model: str = ""
    raw_content: str = ""


class StructuredModelClient:
    """
    classify(prompt, schema) -> ClassificationResult

    Every call, successful or not, is recorded as an LLMConversation through
    ``conversation_sink`` (typically the persistence store).
    """

    def __init__(
        self,
        llm_client: BaseLLMClient,
        conversation_sink: Optional[Any] = None,
        project_id: str = "",
        max_retries: int = 2,
    ):
        self.llm_client = llm_client
        self.conversation_sink = conversation_sink
        self.project_id = project_id
        self.max_retries = max_retries

    @property
    def model_id(self) -> str:
        return self.llm_client.model_id

    def with_project(self, project_id: str) -> "StructuredModelClient":
        return StructuredModelClient(self.llm_client, self.conversation_sink, project_id, self.max_retries)

    def classify(
        self,
        prompt: str,
        schema: Type[T],
        system_prompt: Optional[str] = None,
        purpose: str = "classification",
    ) -> ClassificationResult[T]:
        start = time.time()
        try:
            response = self.llm_client.invoke_with_retry(
                prompt, system_prompt=system_prompt, max_retries=self.max_retries
            )
        except OntologyEngineError as e:
            self._record(purpose, prompt, system_prompt, "", 0, 0, start, "error", str(e))
            raise
        except Exception as e:
            self._record(purpose, prompt, system_prompt, "", 0, 0, start, "error", str(e))
            raise LLMError(
                message=f"model call failed: {e}",
                model_id=self.model_id,
                original_error=e,
            ) from e

        try:
            payload = extract_json(response.content)
            data = schema.model_validate(payload)
        except MalformedOutputError as e:
            self._record(purpose, prompt, system_prompt, response.content,
                         response.input_tokens, response.output_tokens, start, "error", e.message)
            raise
        except PydanticValidationError as e:
            self._record(purpose, prompt, system_prompt, response.content,
                         response.input_tokens, response.output_tokens, start, "error", str(e))
            raise MalformedOutputError(
                f"model response did not match {schema.__name__}",
                raw_content=response.content,
                original_error=e,
            ) from e

        duration_ms = self._record(purpose, prompt, system_prompt, response.content,
                                   response.input_tokens, response.output_tokens, start, "success")
        return ClassificationResult(
            data=data,
            prompt_tokens=response.input_tokens,
            completion_tokens=response.output_tokens,
            duration_ms=duration_ms,
            status="success",
            model=response.model_id,
            raw_content=response.content,
        )

    def _record(self, purpose: str, prompt: str, system_prompt: Optional[str], response: str,
                prompt_tokens: int, completion_tokens: int, start: float, status: str,
                error_message: Optional[str] = None) -> int:
        duration_ms = int((time.time() - start) * 1000)
        if self.conversation_sink is not None:
            self.conversation_sink.save_conversation(LLMConversation(
                project_id=self.project_id,
                purpose=purpose,
                prompt=prompt,
                system_prompt=system_prompt or "",
                response=response,
                model=self.model_id,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                duration_ms=duration_ms,
                status=status,
                error_message=error_message,
            ))
        if status != "success":
            logger.warning(
                f"Structured model call failed: {purpose}",
                extra={"extra_fields": {"error": error_message, "duration_ms": duration_ms}}
            )
        return duration_ms
