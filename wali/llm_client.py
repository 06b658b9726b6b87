"""DashScope (Qwen) embedding and generation clients with error mapping.

Both clients speak JSON over httpx and translate every failure into the
``wali.errors`` taxonomy: network problems and timeouts become
``TransportError``, non-2xx answers become ``ApiError``, unexpected bodies
become ``FormatError``.
"""
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from wali import config
from wali.errors import (
    ApiError,
    EmptyAnswerError,
    EmptyResultError,
    FormatError,
    TransportError,
)

logger = structlog.get_logger()

EMBEDDING_PATH = "/services/embeddings/text-embedding/text-embedding"
GENERATION_PATH = "/services/aigc/text-generation/generation"

SYSTEM_PREAMBLE = (
    "You are a knowledge base assistant. Answer the user's question strictly "
    "from the reference documents provided. If the documents do not contain "
    "the answer, say so honestly instead of guessing."
)

USER_TURN_TEMPLATE = "reference documents:\n\n{context}\n\nquestion:\n\n{question}"


# Response shapes


class EmbeddingData(BaseModel):
    embedding: List[float]
    text_index: Optional[int] = None


class EmbeddingOutput(BaseModel):
    embeddings: List[EmbeddingData]


class EmbeddingResponse(BaseModel):
    output: EmbeddingOutput


class ChatMessage(BaseModel):
    role: str
    content: str


class Choice(BaseModel):
    message: ChatMessage


class TextOutput(BaseModel):
    """Flat shape: ``{"output": {"text": "..."}}``."""

    text: str

    def answer(self) -> str:
        return self.text


class ChoicesOutput(BaseModel):
    """Message shape: ``{"output": {"choices": [{"message": {...}}]}}``."""

    choices: List[Choice]

    def answer(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].message.content


# Tried in this order; the first shape that validates and carries text wins.
ANSWER_SHAPES = (TextOutput, ChoicesOutput)


def decode_answer(output: Any) -> str:
    """Extract the answer text from a generation ``output`` object.

    Args:
        output: The ``output`` member of a generation response

    Returns:
        Non-empty answer text

    Raises:
        EmptyAnswerError: If no accepted shape yields usable text
    """
    for shape in ANSWER_SHAPES:
        try:
            parsed = shape.model_validate(output)
        except ValidationError:
            continue
        answer = parsed.answer()
        if answer and answer.strip():
            return answer

    raise EmptyAnswerError("Generation API returned no answer text")


class DashScopeClient:
    """Shared request plumbing for DashScope services."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            api_key: DashScope API key
            model: Model name sent with each request
            base_url: API base URL (defaults to config.DASHSCOPE_BASE_URL)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used to stub the network)
        """
        self.api_key = api_key
        self.model = model
        self.base_url = (base_url or config.DASHSCOPE_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}{path}", json=payload, headers=headers
                )
        except httpx.TimeoutException as e:
            logger.error("dashscope_timeout", path=path, timeout=self.timeout)
            raise TransportError(f"Request timed out after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            logger.error("dashscope_connection_error", path=path, error=str(e))
            raise TransportError(f"Network request failed: {e}") from e

        if not response.is_success:
            logger.error(
                "dashscope_http_error",
                path=path,
                status_code=response.status_code,
            )
            raise ApiError(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise FormatError(f"Response is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise FormatError("Response body is not a JSON object")

        return data


class EmbeddingClient(DashScopeClient):
    """Turns passages into fixed-length vectors."""

    def __init__(self, api_key: str, model: str = None, **kwargs):
        kwargs.setdefault("timeout", config.EMBEDDING_TIMEOUT)
        super().__init__(api_key, model or config.EMBEDDING_MODEL, **kwargs)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed several texts in one request.

        Args:
            texts: Passages to embed

        Returns:
            One vector per input text, in input order

        Raises:
            TransportError, ApiError, FormatError, EmptyResultError
        """
        if not texts:
            return []

        payload = {"model": self.model, "input": {"texts": list(texts)}}

        logger.debug("embedding_request", model=self.model, batch_size=len(texts))
        data = await self._post(EMBEDDING_PATH, payload)

        try:
            parsed = EmbeddingResponse.model_validate(data)
        except ValidationError as e:
            raise FormatError(f"Unexpected embedding response shape: {e}") from e

        vectors: List[Optional[List[float]]] = [None] * len(texts)
        for position, item in enumerate(parsed.output.embeddings):
            index = item.text_index if item.text_index is not None else position
            if not 0 <= index < len(texts):
                raise FormatError(f"Embedding text_index {index} out of range")
            vectors[index] = item.embedding

        for index, vector in enumerate(vectors):
            if not vector:
                raise EmptyResultError(f"Embedding API returned no vector for text {index}")

        logger.debug(
            "embedding_response",
            model=self.model,
            count=len(vectors),
            dimension=len(vectors[0]),
        )

        return vectors

    async def embed(self, text: str) -> List[float]:
        """Embed a single text (a batch of one)."""
        vectors = await self.embed_batch([text])
        return vectors[0]


class GenerationClient(DashScopeClient):
    """Chat-completion client used to answer questions from context."""

    def __init__(
        self,
        api_key: str,
        model: str = None,
        temperature: Optional[float] = None,
        top_p: Optional[float] = None,
        **kwargs,
    ):
        kwargs.setdefault("timeout", config.GENERATION_TIMEOUT)
        super().__init__(api_key, model or config.CHAT_MODEL, **kwargs)
        self.temperature = config.GENERATION_TEMPERATURE if temperature is None else temperature
        self.top_p = config.GENERATION_TOP_P if top_p is None else top_p

    async def generate(self, messages: Sequence[Dict[str, str]]) -> str:
        """Send a chat request and return the answer text.

        Args:
            messages: Ordered list of dicts with 'role' and 'content'

        Returns:
            The model's answer

        Raises:
            TransportError, ApiError, FormatError, EmptyAnswerError
        """
        payload = {
            "model": self.model,
            "input": {"messages": list(messages)},
            "parameters": {"temperature": self.temperature, "top_p": self.top_p},
        }

        logger.info("generation_request", model=self.model, message_count=len(messages))
        data = await self._post(GENERATION_PATH, payload)

        output = data.get("output")
        if not isinstance(output, dict):
            raise FormatError("Generation response has no 'output' object")

        answer = decode_answer(output)
        logger.info("generation_response", model=self.model, response_length=len(answer))
        return answer

    @staticmethod
    def build_messages(question: str, context: str) -> List[Dict[str, str]]:
        """Build the system preamble + reference/question user turn."""
        return [
            {"role": "system", "content": SYSTEM_PREAMBLE},
            {
                "role": "user",
                "content": USER_TURN_TEMPLATE.format(context=context, question=question),
            },
        ]

    async def answer_with_context(self, question: str, context: str) -> str:
        """Answer *question* using only *context*."""
        return await self.generate(self.build_messages(question, context))
