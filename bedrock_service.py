"""
Amazon Bedrock service module.
Implements the LLMProvider contract on top of bedrock-runtime invoke_model.
"""

import boto3
import json
import logging
from typing import List, Dict, Optional, Any
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from config import (
    aws_config,
    model_config,
    get_credentials_info,
    get_model_config,
    get_max_output_tokens,
)

from agent.errors import ProviderAuthError, ProviderTransportError
from agent.models import Message, ToolCall, ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_USER
from agent.provider import LLMProvider, ProviderResponse


logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"

TRANSPORT_ERROR_CODES = {
    "ThrottlingException", "TooManyRequestsException", "ServiceUnavailableException",
    "InternalServerException", "ModelNotReadyException", "ModelTimeoutException",
}
AUTH_ERROR_CODES = {
    "AccessDeniedException", "UnrecognizedClientException",
    "ExpiredTokenException", "InvalidSignatureException",
}


class BedrockError(Exception):
    """Custom exception for Bedrock service errors"""
    pass


class BedrockService(LLMProvider):
    """
    Service class for Amazon Bedrock interactions.
    Anthropic models use the Messages API; other families get a flat text prompt.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        client: Any = None,
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region
        self.max_tokens = min(max_tokens or model_config.max_tokens, get_max_output_tokens(self.model_id))
        self.temperature = temperature if temperature is not None else model_config.temperature
        self.client = client or self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            logger.info(get_credentials_info())
            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise ProviderAuthError("AWS credentials not configured.")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    @property
    def provider(self) -> str:
        return get_model_config(self.model_id).get("provider", "anthropic")

    # ------------------------------------------------------------------
    # Request formatting
    # ------------------------------------------------------------------

    @staticmethod
    def _merge_turns(messages: List[Message]) -> List[Dict[str, str]]:
        """Alternating user/assistant turns with non-empty text, starting with user."""
        turns: List[Dict[str, str]] = []
        for m in messages:
            if m.role == ROLE_SYSTEM:
                continue
            text = m.content if (m.content or "").strip() else "(empty)"
            if turns and turns[-1]["role"] == m.role:
                turns[-1]["content"] += "\n\n" + text
            else:
                turns.append({"role": m.role, "content": text})
        while turns and turns[0]["role"] == ROLE_ASSISTANT:
            turns.pop(0)
        return turns

    def _format_messages_anthropic(self, messages: List[Message],
                                   tools: Optional[List[Dict]] = None) -> Dict[str, Any]:
        """Format request body for Anthropic Claude models"""
        system_prompt = "\n\n".join(m.content for m in messages if m.role == ROLE_SYSTEM)
        body: Dict[str, Any] = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": t["role"], "content": [{"type": "text", "text": t["content"]}]}
                for t in self._merge_turns(messages)
            ],
        }
        if system_prompt:
            body["system"] = system_prompt
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if tools:
            body["tools"] = tools
        return body

    def _format_text_prompt(self, messages: List[Message]) -> str:
        lines = [m.content for m in messages if m.role == ROLE_SYSTEM]
        for t in self._merge_turns(messages):
            label = "User" if t["role"] == ROLE_USER else "Assistant"
            lines.append(f"{label}: {t['content']}")
        lines.append("Assistant:")
        return "\n\n".join(lines)

    def _format_request_body(self, messages: List[Message],
                             tools: Optional[List[Dict]] = None) -> Dict[str, Any]:
        provider = self.provider
        if provider == "anthropic":
            return self._format_messages_anthropic(messages, tools=tools)
        prompt = self._format_text_prompt(messages)
        temperature = self.temperature if self.temperature is not None else 0.5
        if provider == "meta":
            return {"prompt": prompt, "max_gen_len": min(self.max_tokens, 2048), "temperature": temperature}
        return {"prompt": prompt, "max_tokens": self.max_tokens, "temperature": temperature}

    # ------------------------------------------------------------------
    # Response parsing
    # ------------------------------------------------------------------

    def _parse_response(self, response_body: Dict) -> ProviderResponse:
        """Parse the response body into text and structured tool calls"""
        result = ProviderResponse()
        try:
            if "content" in response_body:
                for block in response_body.get("content", []):
                    block_type = block.get("type", "")
                    if block_type == "text":
                        result.text += block.get("text", "")
                    elif block_type == "tool_use":
                        call = ToolCall(name=block.get("name", ""), input=block.get("input") or {})
                        if block.get("id"):
                            call.id = block["id"]
                        result.tool_calls.append(call)
                usage = response_body.get("usage", {})
                result.input_tokens = usage.get("input_tokens", 0)
                result.output_tokens = usage.get("output_tokens", 0)
                result.stop_reason = response_body.get("stop_reason")
            elif "generation" in response_body:
                result.text = response_body["generation"]
                result.input_tokens = response_body.get("prompt_token_count", 0)
                result.output_tokens = response_body.get("generation_token_count", 0)
                result.stop_reason = response_body.get("stop_reason")
            else:
                choice = response_body["choices"][0]
                result.text = choice.get("text", "")
                result.stop_reason = choice.get("stop_reason")
        except (KeyError, IndexError, TypeError) as e:
            logger.error(f"Error parsing response: {e}")
            raise BedrockError(f"Failed to parse model response: {e}")
        return result

    # ------------------------------------------------------------------
    # LLMProvider
    # ------------------------------------------------------------------

    def send(self, messages: List[Message], tools: Optional[List[Dict[str, Any]]] = None) -> ProviderResponse:
        """Invoke the model once. Errors are mapped onto the agent error taxonomy."""
        request_body = self._format_request_body(messages, tools=tools)
        try:
            logger.info(f"Invoking model: {self.model_id}")
            response = self.client.invoke_model(
                modelId=self.model_id,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json",
            )
            response_body = json.loads(response["body"].read())
        except ClientError as e:
            raise self._map_client_error(e) from e
        except (EndpointConnectionError, ReadTimeoutError, ConnectionClosedError) as e:
            logger.warning(f"Bedrock connection error: {e}")
            raise ProviderTransportError(f"Bedrock network error: {e}") from e

        result = self._parse_response(response_body)
        logger.debug(f"Model reply: {len(result.text)} chars, {len(result.tool_calls)} tool call(s), "
                     f"{result.input_tokens} in / {result.output_tokens} out tokens")
        return result

    @staticmethod
    def _map_client_error(e: ClientError) -> Exception:
        error = e.response.get("Error", {})
        error_code = error.get("Code", "Unknown")
        error_message = error.get("Message", str(e))
        metadata = e.response.get("ResponseMetadata", {})
        status = metadata.get("HTTPStatusCode")
        headers = metadata.get("HTTPHeaders", {})
        logger.error(f"Bedrock API error: {error_code} - {error_message}")

        if error_code in TRANSPORT_ERROR_CODES or (status and status >= 500):
            return ProviderTransportError.from_provider_error(
                Exception(f"Bedrock {error_code}: {error_message}"), headers=headers
            )
        if error_code in AUTH_ERROR_CODES or status in (401, 403):
            return ProviderAuthError(f"Bedrock rejected credentials ({error_code}): {error_message}")
        return BedrockError(f"Bedrock API error ({error_code}, HTTP {status or 400} bad request): {error_message}")

    def test_connection(self) -> tuple:
        """Test the Bedrock connection"""
        try:
            self.send([Message(role=ROLE_USER, content="Hi")])
            return True, "Connection successful"
        except Exception as e:
            return False, str(e)
