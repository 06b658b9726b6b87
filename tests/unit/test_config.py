"""Unit tests for configuration, the client registry and error rendering."""
import pytest

from tests.conftest import FakeEmbeddingClient, FakeGenerationClient
from wali.config import RAGConfig
from wali.errors import ApiError, ConfigError, NotConfiguredError, WaliError
from wali.llm_client import EmbeddingClient, GenerationClient
from wali.services import ServiceRegistry


class TestRAGConfig:
    def test_defaults(self):
        rag_config = RAGConfig()
        assert rag_config.embedding_model == "text-embedding-v2"
        assert rag_config.generation_model == "qwen-turbo"
        assert (rag_config.chunk_size, rag_config.chunk_overlap, rag_config.top_k) == (800, 80, 3)

    @pytest.mark.parametrize(
        "values",
        [
            {"chunk_size": 0},
            {"chunk_size": 100, "chunk_overlap": 100},
            {"chunk_overlap": -1},
            {"top_k": 0},
        ],
    )
    def test_invalid_values(self, values):
        with pytest.raises(ConfigError):
            RAGConfig(**values)


class TestServiceRegistry:
    def test_starts_unconfigured(self):
        registry = ServiceRegistry()

        assert registry.is_configured is False
        with pytest.raises(NotConfiguredError):
            registry.require()

    def test_configure_builds_clients(self):
        registry = ServiceRegistry(RAGConfig(embedding_model="emb-x", generation_model="gen-y"))

        services = registry.configure("  sk-abc  ")

        assert registry.require() is services
        assert isinstance(services.embedding, EmbeddingClient)
        assert isinstance(services.generation, GenerationClient)
        assert services.embedding.api_key == "sk-abc"
        assert services.embedding.model == "emb-x"
        assert services.generation.model == "gen-y"

    @pytest.mark.parametrize("api_key", ["", "   "])
    def test_empty_key_is_rejected(self, api_key):
        registry = ServiceRegistry()

        with pytest.raises(NotConfiguredError):
            registry.configure(api_key)
        assert registry.is_configured is False

    def test_reconfigure_replaces_clients(self):
        registry = ServiceRegistry()
        first = registry.configure("sk-1")
        second = registry.configure("sk-2")

        assert first is not second
        assert registry.require().embedding.api_key == "sk-2"

    def test_use_and_reset(self):
        registry = ServiceRegistry()
        embedding, generation = FakeEmbeddingClient(), FakeGenerationClient()

        registry.use(embedding, generation)
        assert registry.require().embedding is embedding

        registry.reset()
        assert registry.is_configured is False

    def test_model_change_rebuilds_clients(self):
        registry = ServiceRegistry()
        registry.configure("sk-test")

        registry.update_config(embedding_model="text-embedding-v3", generation_model="qwen-max")

        services = registry.require()
        assert services.embedding.model == "text-embedding-v3"
        assert services.generation.model == "qwen-max"
        assert services.embedding.api_key == "sk-test"

    def test_non_model_change_keeps_clients(self):
        registry = ServiceRegistry()
        services = registry.configure("sk-test")

        registry.update_config(top_k=7)

        assert registry.require() is services

    def test_model_change_keeps_installed_clients(self):
        registry = ServiceRegistry()
        embedding, generation = FakeEmbeddingClient(), FakeGenerationClient()
        registry.use(embedding, generation)

        registry.update_config(embedding_model="text-embedding-v3")

        assert registry.require().embedding is embedding

    def test_update_config_validates(self):
        registry = ServiceRegistry()

        assert registry.update_config(top_k=5).top_k == 5
        with pytest.raises(ConfigError):
            registry.update_config(chunk_overlap=registry.config.chunk_size)
        assert registry.config.top_k == 5


class TestErrors:
    def test_plain_message(self):
        assert str(WaliError("boom")) == "boom"

    def test_context_prefix(self):
        error = ApiError(500, "busy")
        error.add_context(stage="embedding", batch=3, total_batches=4)

        assert str(error) == "[embedding, batch 3/4] API request failed: 500 - busy"
        assert error.stage == "embedding"
        assert error.batch == 3

    def test_inner_context_wins(self):
        error = WaliError("boom", stage="embedding")
        error.add_context(stage="storage", batch=None)

        assert error.stage == "embedding"
        assert "batch" not in error.context

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)
