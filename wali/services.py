"""Runtime registry for the embedding and generation clients.

The clients only exist once an API key has been supplied. The registry is an
explicit configuration cell: pipelines ask it for the current clients at the
start of each call and get ``NotConfiguredError`` while none are set.
"""
import threading
from dataclasses import dataclass, replace
from typing import Any, Optional

import structlog

from wali.config import RAGConfig
from wali.errors import NotConfiguredError
from wali.llm_client import EmbeddingClient, GenerationClient

logger = structlog.get_logger()

MODEL_FIELDS = {"embedding_model", "generation_model"}


@dataclass(frozen=True)
class Services:
    """A consistent pair of backend clients."""

    embedding: EmbeddingClient
    generation: GenerationClient


class ServiceRegistry:
    """Holds the RAG configuration and, once configured, the backend clients."""

    def __init__(self, rag_config: Optional[RAGConfig] = None, **client_options: Any):
        """Initialize in the unconfigured state.

        Args:
            rag_config: Models, chunking and retrieval parameters (defaults from config)
            **client_options: Extra keyword arguments passed to both clients
                (e.g. ``base_url`` or ``transport``)
        """
        self._lock = threading.Lock()
        self._config = rag_config or RAGConfig()
        self._config.validate()
        self._client_options = client_options
        self._api_key: Optional[str] = None
        self._services: Optional[Services] = None

    @property
    def config(self) -> RAGConfig:
        with self._lock:
            return self._config

    def update_config(self, **changes: Any) -> RAGConfig:
        """Replace configuration fields; the new config is validated before it is installed.

        Changing a model name rebuilds the configured clients with the stored key.

        Raises:
            ConfigError: If the resulting configuration is invalid
        """
        with self._lock:
            new_config = replace(self._config, **changes)
            self._config = new_config
            if self._api_key is not None and MODEL_FIELDS & changes.keys():
                self._services = self._build(self._api_key)
        logger.info("rag_config_updated", **changes)
        return new_config

    @property
    def is_configured(self) -> bool:
        with self._lock:
            return self._services is not None

    def configure(self, api_key: str) -> Services:
        """Build fresh clients for *api_key* and swap them in.

        Raises:
            NotConfiguredError: If the key is empty
        """
        if not api_key or not api_key.strip():
            raise NotConfiguredError("API key must not be empty")
        api_key = api_key.strip()

        with self._lock:
            services = self._build(api_key)
            self._api_key = api_key
            self._services = services

        logger.info(
            "rag_services_configured",
            embedding_model=services.embedding.model,
            generation_model=services.generation.model,
        )
        return services

    def _build(self, api_key: str) -> Services:
        return Services(
            embedding=EmbeddingClient(
                api_key, model=self._config.embedding_model, **self._client_options
            ),
            generation=GenerationClient(
                api_key, model=self._config.generation_model, **self._client_options
            ),
        )

    def use(self, embedding: EmbeddingClient, generation: GenerationClient) -> Services:
        """Install already-built clients."""
        with self._lock:
            self._api_key = None
            self._services = Services(embedding=embedding, generation=generation)
            return self._services

    def reset(self) -> None:
        """Return to the unconfigured state."""
        with self._lock:
            self._api_key = None
            self._services = None

    def require(self) -> Services:
        """Current clients.

        Raises:
            NotConfiguredError: If no API key has been configured
        """
        with self._lock:
            services = self._services
        if services is None:
            raise NotConfiguredError("Please configure an API key first")
        return services
