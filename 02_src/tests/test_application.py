"""Tests for Application."""

from unittest.mock import patch

import pytest
import pytest_asyncio

from copilot.app import Application
from copilot.config import Settings, parse_id_list, resolve_db_path


@pytest_asyncio.fixture
async def app(monkeypatch, mock_llm, object_store):
    """Started application with injected clients and no OpenAI key."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    application = Application(
        db_path=":memory:",
        settings=Settings(agent_model="claude-test"),
        llm_provider=mock_llm,
        object_store=object_store,
    )
    await application.start()
    yield application
    await application.stop()


class TestApplicationStart:
    """Tests for Application.start()."""

    @pytest.mark.asyncio
    async def test_start_initializes_components(self, app):
        """Test that start initializes all components."""
        assert app.storage is not None
        assert app.dialogue_agent is not None
        assert app.image_access is not None
        assert app.image_ingestion is not None
        assert app.voice_sessions.active_count == 0

    @pytest.mark.asyncio
    async def test_components_share_dependencies(self, app):
        """Test that components are wired in dependency order."""
        assert app._tracker._storage is app._storage
        assert app._dialogue_agent._orchestrator is app._orchestrator
        assert app._dialogue_agent._image_access is app._image_access
        assert app._ingestion._object_store is app._object_store

    @pytest.mark.asyncio
    async def test_tools_without_knowledge_base(self, app):
        """Test the default tool set and the vision variant."""
        definition = app._orchestrator.definition
        assert definition.model == "claude-test"
        assert definition.tool_names == ["web_search", "get_images"]
        assert len(definition.guardrails) == 1
        assert app._orchestrator._vision_definition.tool_names == ["get_images"]

    @pytest.mark.asyncio
    async def test_start_creates_database_tables(self, app):
        """Test that start creates database tables."""
        conversation, created = await app.storage.get_or_create_conversation("tech-1", "1")
        assert created is True
        assert conversation.id

    @pytest.mark.asyncio
    async def test_voice_needs_openai_key(self, app):
        """Test that voice sessions fail clearly without an OpenAI client."""
        with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
            await app.voice_sessions.create("c1")
        assert app.voice_sessions.active_count == 0

    @pytest.mark.asyncio
    async def test_llm_built_from_environment(self, monkeypatch, object_store):
        """Test that the Anthropic provider is created when none is injected."""
        monkeypatch.setenv("ANTHROPIC_API_KEY", "test_key")
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        with patch("copilot.llm.llm_provider.anthropic.AsyncAnthropic"):
            application = Application(
                db_path=":memory:", settings=Settings(), object_store=object_store
            )
            await application.start()
            assert application._llm.model == Settings.agent_model
            await application.stop()


class TestApplicationLifecycle:
    """Tests for stop and reset."""

    def test_not_started(self):
        """Test that component access before start raises."""
        application = Application(db_path=":memory:", settings=Settings())
        for name in ("storage", "dialogue_agent", "image_ingestion", "image_access", "voice_sessions"):
            with pytest.raises(RuntimeError, match="Application not started"):
                getattr(application, name)

    @pytest.mark.asyncio
    async def test_reset_clears_data(self, app):
        """Test that reset clears data and keeps the agent running."""
        conversation, _ = await app.storage.get_or_create_conversation("tech-1", "1")
        await app.reset()

        assert await app.storage.get_conversation(conversation.id) is None
        assert app.dialogue_agent._running is True


class TestSettings:
    """Tests for environment configuration."""

    def test_from_env(self, monkeypatch):
        """Test that environment variables override defaults."""
        monkeypatch.setenv("AGENT_MODEL", "claude-opus")
        monkeypatch.setenv("VECTOR_STORE_ID", "vs_1, vs_2,")
        monkeypatch.setenv("SIGNED_URL_TTL", "not-a-number")
        monkeypatch.setenv("HISTORY_LIMIT", "8")
        monkeypatch.setenv("GCS_BUCKET", "")

        settings = Settings.from_env()

        assert settings.agent_model == "claude-opus"
        assert settings.vector_store_ids == ("vs_1", "vs_2")
        assert settings.signed_url_ttl == 900
        assert settings.history_limit == 8
        assert settings.gcs_bucket is None

    def test_parse_id_list(self):
        """Test comma-separated id parsing."""
        assert parse_id_list(None) == ()
        assert parse_id_list(" a ,,b ") == ("a", "b")

    def test_resolve_db_path(self):
        """Test database path resolution."""
        assert resolve_db_path(":memory:") == ":memory:"
        assert resolve_db_path("/tmp/x.db").is_absolute()
        assert resolve_db_path("03_data/x.db").is_absolute()
