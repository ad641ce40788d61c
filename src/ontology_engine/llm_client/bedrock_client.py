"""
Bedrock transport for model-assisted extraction steps

The engine only needs "prompt in, text out"; schema validation of the reply
lives in StructuredModelClient. Throttling and transient service errors are
retried here, and credential or request errors surface as PermanentError so a
DAG node fails fast instead of burning its retries.
"""
from __future__ import annotations

import json
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import LLMConfig, LLMProvider
from ..utils import (
    ErrorCategory,
    LLMError,
    OntologyEngineError,
    OntologyMetrics,
    PermanentError,
    RetryPolicy,
    get_logger,
    retry_call,
)

logger = get_logger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"

# Error code -> category for requests that will never succeed on retry
_PERMANENT_CODES: Dict[str, ErrorCategory] = {
    "AccessDeniedException": ErrorCategory.AUTHENTICATION,
    "UnrecognizedClientException": ErrorCategory.AUTHENTICATION,
    "ValidationException": ErrorCategory.LLM,
    "ResourceNotFoundException": ErrorCategory.LLM,
}

_CREDENTIAL_FIELDS = ("aws_access_key_id", "aws_secret_access_key", "aws_session_token")


@dataclass
class LLMResponse:
    """Text reply plus usage accounting"""
    content: str
    model_id: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: Optional[str] = None
    latency_ms: float = 0.0
    raw_response: Optional[Dict[str, Any]] = None

    @property
    def truncated(self) -> bool:
        return self.stop_reason == "max_tokens"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "model_id": self.model_id,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "stop_reason": self.stop_reason,
            "latency_ms": self.latency_ms,
        }


class BaseLLMClient(ABC):
    """Anything that can answer a prompt; tests substitute their own"""

    @property
    @abstractmethod
    def model_id(self) -> str:
        pass

    @abstractmethod
    def invoke(self, prompt: str, system_prompt: Optional[str] = None, **kwargs) -> LLMResponse:
        pass

    def invoke_with_retry(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_retries: Optional[int] = None,
        **kwargs
    ) -> LLMResponse:
        policy = RetryPolicy(max_retries=2 if max_retries is None else max_retries)
        return retry_call(lambda: self.invoke(prompt, system_prompt, **kwargs),
                          policy=policy, operation="llm_invoke")


class BedrockClaudeClient(BaseLLMClient):
    """
    Claude on AWS Bedrock via boto3's bedrock-runtime client

    The boto3 client is created on first use and shared across threads; boto3
    retries are disabled so RetryPolicy is the only retry layer.
    """

    def __init__(self, config: LLMConfig):
        self.config = config
        self._client = None
        self._lock = threading.Lock()

    @property
    def model_id(self) -> str:
        return self.config.model_id

    def _get_client(self):
        with self._lock:
            if self._client is None:
                credentials = {
                    name: getattr(self.config, name).get_secret_value()
                    for name in _CREDENTIAL_FIELDS
                    if getattr(self.config, name) is not None
                }
                session = boto3.Session(region_name=self.config.aws_region, **credentials)
                self._client = session.client(
                    "bedrock-runtime",
                    config=Config(
                        region_name=self.config.aws_region,
                        retries={"max_attempts": 0, "mode": "standard"},
                        connect_timeout=30,
                        read_timeout=self.config.request_timeout,
                    ),
                )
                logger.info(
                    "Bedrock runtime client ready",
                    extra={"extra_fields": {"region": self.config.aws_region, "model_id": self.model_id}}
                )
            return self._client

    def build_request(self, prompt: str, system_prompt: Optional[str] = None, **overrides) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": overrides.get("max_tokens", self.config.max_tokens),
            "temperature": overrides.get("temperature", self.config.temperature),
            "top_p": overrides.get("top_p", self.config.top_p),
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            body["system"] = system_prompt
        return body

    def invoke(self, prompt: str, system_prompt: Optional[str] = None, **kwargs) -> LLMResponse:
        """
        One Bedrock call, no retries

        Raises:
            PermanentError: credentials or request rejected
            LLMError: throttling, timeouts and other transient failures
        """
        body = self.build_request(prompt, system_prompt, **kwargs)
        started = time.perf_counter()
        try:
            raw = self._get_client().invoke_model(
                modelId=self.model_id,
                body=json.dumps(body),
                contentType="application/json",
                accept="application/json",
            )
        except (ClientError, BotoCoreError) as e:
            elapsed = time.perf_counter() - started
            OntologyMetrics.record_llm_call(elapsed, self.model_id, 0, 0, success=False)
            raise self._translate(e, elapsed) from e

        elapsed = time.perf_counter() - started
        response = self._parse(json.loads(raw["body"].read()), elapsed * 1000)
        OntologyMetrics.record_llm_call(elapsed, self.model_id, response.input_tokens, response.output_tokens)
        if response.truncated:
            logger.warning(
                "Model reply hit max_tokens",
                extra={"extra_fields": {"max_tokens": body["max_tokens"], "model_id": self.model_id}}
            )
        return response

    def _parse(self, payload: Dict[str, Any], latency_ms: float) -> LLMResponse:
        text = "".join(
            block.get("text", "") for block in payload.get("content") or [] if block.get("type") == "text"
        )
        usage = payload.get("usage") or {}
        return LLMResponse(
            content=text,
            model_id=self.model_id,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0),
            stop_reason=payload.get("stop_reason"),
            latency_ms=latency_ms,
            raw_response=payload,
        )

    def _translate(self, error: Exception, elapsed: float) -> OntologyEngineError:
        code = ""
        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code", "")
        logger.error(
            "Bedrock call failed",
            extra={"extra_fields": {"code": code or type(error).__name__,
                                    "latency_ms": round(elapsed * 1000, 1)}}
        )
        if code in _PERMANENT_CODES:
            return PermanentError(
                message=f"Bedrock rejected the request ({code}): {error}",
                category=_PERMANENT_CODES[code],
                original_error=error,
            )
        return LLMError(
            message=f"Bedrock call failed: {error}",
            model_id=self.model_id,
            original_error=error,
        )

    def invoke_with_retry(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_retries: Optional[int] = None,
        **kwargs
    ) -> LLMResponse:
        policy = RetryPolicy(
            max_retries=self.config.retry_attempts if max_retries is None else max_retries,
            initial_delay=self.config.retry_delay,
        )
        return retry_call(lambda: self.invoke(prompt, system_prompt, **kwargs),
                          policy=policy, operation="bedrock_invoke")


class LLMClientFactory:
    """One shared transport per (provider, model, region)"""

    _clients: Dict[str, BaseLLMClient] = {}
    _lock = threading.Lock()

    @classmethod
    def get_client(cls, config: LLMConfig) -> BaseLLMClient:
        provider = LLMProvider(config.provider)
        key = f"{provider.value}:{config.model_id}:{config.aws_region}"
        with cls._lock:
            client = cls._clients.get(key)
            if client is None:
                if provider != LLMProvider.BEDROCK_CLAUDE:
                    raise ValueError(f"Unsupported LLM provider: {config.provider}")
                client = cls._clients[key] = BedrockClaudeClient(config)
            return client

    @classmethod
    def clear_clients(cls) -> None:
        with cls._lock:
            cls._clients.clear()


def get_llm_client(config: LLMConfig) -> BaseLLMClient:
    return LLMClientFactory.get_client(config)
