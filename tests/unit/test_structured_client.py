"""
Unit Tests for the Structured Model Client and Bedrock Transport
"""
import io
import json
import pytest
from unittest.mock import MagicMock, patch
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from botocore.exceptions import ClientError

from ontology_engine.config import LLMConfig
from ontology_engine.llm_client import (
    BedrockClaudeClient,
    FlexibleEnumValue,
    LLMOutput,
    LLMResponse,
    StructuredModelClient,
    extract_json,
)
from ontology_engine.persistence import InMemoryStore
from ontology_engine.utils import LLMError, MalformedOutputError, PermanentError


class MockLLMClient:
    """Mock LLM client for testing"""

    def __init__(self, responses=None, error=None):
        self.responses = responses or []
        self.error = error
        self.call_count = 0

    @property
    def model_id(self):
        return "mock-model"

    def invoke(self, prompt, system_prompt=None, **kwargs):
        """Return mock response"""
        if self.error is not None:
            self.call_count += 1
            raise self.error

        if self.call_count < len(self.responses):
            content = self.responses[self.call_count]
        else:
            content = self.responses[-1] if self.responses else ""

        self.call_count += 1

        return LLMResponse(
            content=content,
            model_id="mock-model",
            input_tokens=100,
            output_tokens=50,
            latency_ms=100.0,
        )

    def invoke_with_retry(self, prompt, system_prompt=None, max_retries=None, **kwargs):
        """Return mock response with retry"""
        return self.invoke(prompt, system_prompt, **kwargs)


class StatusResponse(LLMOutput):
    is_state_machine: bool = False
    values: list = []
    confidence: float = 0.5


class TestExtractJson:
    """Tests for JSON extraction from model replies"""

    def test_plain_json(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_block(self):
        content = 'Here is the result:\n```json\n{"confidence": 0.9}\n```\nDone.'
        assert extract_json(content) == {"confidence": 0.9}

    def test_embedded_object(self):
        assert extract_json('Sure! {"ok": true} Hope that helps.') == {"ok": True}

    def test_embedded_array(self):
        assert extract_json('Values: ["a", "b"]') == ["a", "b"]

    def test_empty_reply(self):
        with pytest.raises(MalformedOutputError):
            extract_json("   ")

    def test_no_json(self):
        with pytest.raises(MalformedOutputError):
            extract_json("I could not decide.")


class TestFlexibleEnumValue:
    """Tests for lenient enum value parsing"""

    def test_scalar_wrapped(self):
        assert FlexibleEnumValue.model_validate("active").value == "active"

    def test_numeric_and_bool_values(self):
        assert FlexibleEnumValue.model_validate(1.0).value == "1"
        assert FlexibleEnumValue.model_validate({"value": True}).value == "true"
        assert FlexibleEnumValue.model_validate({"value": 3}).value == "3"

    def test_category_normalized(self):
        value = FlexibleEnumValue.model_validate({"value": "done", "category": "Terminal Success"})
        assert value.category == "terminal_success"

        value = FlexibleEnumValue.model_validate({"value": "wip", "category": "in-progress"})
        assert value.category == "in_progress"


class TestStructuredModelClient:
    """Tests for classify()"""

    @pytest.fixture
    def store(self):
        return InMemoryStore()

    def test_successful_classification(self, store):
        llm = MockLLMClient(['{"is_state_machine": true, "confidence": 0.9, "extra": "ignored"}'])
        client = StructuredModelClient(llm, conversation_sink=store, project_id="proj-1")

        result = client.classify("prompt", StatusResponse, system_prompt="system", purpose="classify_enum")

        assert result.data.is_state_machine is True
        assert result.prompt_tokens == 100
        assert result.completion_tokens == 50
        assert result.model == "mock-model"

        conversations = store.list_conversations("proj-1")
        assert len(conversations) == 1
        assert conversations[0].purpose == "classify_enum"
        assert conversations[0].status == "success"
        assert conversations[0].system_prompt == "system"

    def test_schema_mismatch_is_malformed(self, store):
        llm = MockLLMClient(['{"confidence": "very high"}'])
        client = StructuredModelClient(llm, conversation_sink=store, project_id="proj-1")

        with pytest.raises(MalformedOutputError):
            client.classify("prompt", StatusResponse)

        conversations = store.list_conversations("proj-1")
        assert conversations[0].status == "error"
        assert conversations[0].response == '{"confidence": "very high"}'

    def test_transport_failure_becomes_llm_error(self, store):
        llm = MockLLMClient(error=RuntimeError("socket closed"))
        client = StructuredModelClient(llm, conversation_sink=store, project_id="proj-1")

        with pytest.raises(LLMError):
            client.classify("prompt", StatusResponse)
        assert store.list_conversations("proj-1")[0].status == "error"

    def test_with_project(self):
        client = StructuredModelClient(MockLLMClient(["{}"]), project_id="a")
        scoped = client.with_project("b")

        assert scoped.project_id == "b"
        assert scoped.llm_client is client.llm_client


class TestBedrockClaudeClient:
    """Tests for the Bedrock transport with a mocked boto3 client"""

    @pytest.fixture
    def config(self):
        return LLMConfig(model_id="test-model", retry_attempts=1, retry_delay=0.0)

    def _body(self, payload):
        return {"body": io.BytesIO(json.dumps(payload).encode("utf-8"))}

    def test_invoke_parses_response(self, config):
        client = BedrockClaudeClient(config)
        mock_boto = MagicMock()
        mock_boto.invoke_model.return_value = self._body({
            "content": [{"type": "text", "text": '{"ok": true}'}],
            "usage": {"input_tokens": 12, "output_tokens": 3},
            "stop_reason": "end_turn",
        })

        with patch.object(client, "_get_client", return_value=mock_boto):
            response = client.invoke("hello", system_prompt="be brief")

        assert response.content == '{"ok": true}'
        assert response.input_tokens == 12
        assert response.output_tokens == 3
        request = json.loads(mock_boto.invoke_model.call_args.kwargs["body"])
        assert request["system"] == "be brief"
        assert request["messages"][0]["content"] == "hello"

    def test_access_denied_is_permanent(self, config):
        client = BedrockClaudeClient(config)
        mock_boto = MagicMock()
        mock_boto.invoke_model.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "no"}}, "InvokeModel"
        )

        with patch.object(client, "_get_client", return_value=mock_boto):
            with pytest.raises(PermanentError):
                client.invoke_with_retry("hello")
        assert mock_boto.invoke_model.call_count == 1

    def test_throttling_is_retried(self, config):
        client = BedrockClaudeClient(config)
        mock_boto = MagicMock()
        mock_boto.invoke_model.side_effect = [
            ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow"}}, "InvokeModel"),
            self._body({"content": [{"type": "text", "text": "done"}], "usage": {}}),
        ]

        with patch.object(client, "_get_client", return_value=mock_boto):
            response = client.invoke_with_retry("hello")

        assert response.content == "done"
        assert mock_boto.invoke_model.call_count == 2
