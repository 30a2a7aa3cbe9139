"""Application bootstrap and lifecycle management."""

import os
from typing import Protocol

from openai import AsyncOpenAI

from .agent import (
    AgentOrchestrator,
    AnthropicRunner,
    GuardrailEvaluator,
    build_agent_definition,
    build_tools,
    build_vision_definition,
)
from .config import Settings, resolve_db_path
from .dialogue import DialogueAgent, HistoryAssembler
from .images import ImageAccess, ImageIngestion, ImageSummarizer
from .llm import EmbeddingProvider, ILLMProvider, LLMProvider
from .logging_config import get_logger
from .storage import GCSObjectStore, IObjectStore, IStorage, Storage
from .tracker import ITracker, Tracker
from .voice import OpenAIRealtimeTransport, VoiceConfig, VoiceSessionRegistry

logger = get_logger(__name__)


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Reset data between test runs."""
        ...


class Application:
    """Main application bootstrap.

    Owns the one agent definition/orchestrator pair and the voice session
    registry for the life of the process. External clients may be injected;
    otherwise they are built from the environment in start().
    """

    def __init__(
        self,
        db_path: str | None = None,
        settings: Settings | None = None,
        llm_provider: ILLMProvider | None = None,
        object_store: IObjectStore | None = None,
        openai_client: AsyncOpenAI | None = None,
    ):
        env_db_path = os.getenv("DATABASE_URL") if db_path is None else db_path
        self._db_path = resolve_db_path(env_db_path)
        self._settings = settings or Settings.from_env()

        # Components (will be initialized in start())
        self._storage: IStorage | None = None
        self._tracker: ITracker | None = None
        self._llm: ILLMProvider | None = llm_provider
        self._openai: AsyncOpenAI | None = openai_client
        self._object_store: IObjectStore | None = object_store
        self._image_access: ImageAccess | None = None
        self._ingestion: ImageIngestion | None = None
        self._orchestrator: AgentOrchestrator | None = None
        self._dialogue_agent: DialogueAgent | None = None
        self._voice_sessions: VoiceSessionRegistry | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    async def start(self) -> None:
        """Initialize components in dependency order."""
        logger.info("Starting application")
        settings = self._settings

        # 1. Storage (no dependencies)
        self._storage = Storage(self._db_path)
        await self._storage.init()
        logger.info("Storage initialized")

        # 2. Tracker (depends on Storage)
        self._tracker = Tracker(self._storage)

        # 3. External clients
        if self._llm is None:
            self._llm = LLMProvider(model=settings.agent_model)
        if self._openai is None and os.getenv("OPENAI_API_KEY"):
            self._openai = AsyncOpenAI()
        if self._object_store is None:
            self._object_store = GCSObjectStore(
                settings.gcs_bucket, default_ttl=settings.signed_url_ttl
            )
        embeddings = EmbeddingProvider(
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            client=self._openai,
        )
        logger.info("External clients initialized")

        # 4. Images (depend on Storage, object store, LLM, embeddings)
        self._image_access = ImageAccess(self._storage, self._object_store)
        self._ingestion = ImageIngestion(
            storage=self._storage,
            object_store=self._object_store,
            summarizer=ImageSummarizer(self._llm, model=settings.image_summary_model),
            embeddings=embeddings,
            tracker=self._tracker,
        )

        # 5. Agent definitions and orchestrator
        guardrail = GuardrailEvaluator(self._llm, model=settings.guardrail_model)
        tools = build_tools(
            self._image_access,
            openai_client=self._openai,
            vector_store_ids=settings.vector_store_ids,
        )
        self._orchestrator = AgentOrchestrator(
            definition=build_agent_definition(
                model=settings.agent_model,
                tools=tools,
                guardrails=(guardrail,),
                max_tool_rounds=settings.max_tool_rounds,
            ),
            runner=AnthropicRunner(self._llm),
            vision_definition=build_vision_definition(
                model=settings.agent_model, tools=tools, guardrails=(guardrail,)
            ),
        )
        logger.info(
            "Agent definition built",
            extra={"context": {"tools": self._orchestrator.definition.tool_names}},
        )

        # 6. DialogueAgent (depends on Storage, orchestrator, images, Tracker)
        history = HistoryAssembler(self._storage, default_limit=settings.history_limit)
        self._dialogue_agent = DialogueAgent(
            storage=self._storage,
            orchestrator=self._orchestrator,
            history=history,
            image_access=self._image_access,
            tracker=self._tracker,
            history_limit=settings.history_limit,
            vision_image_limit=settings.vision_image_limit,
        )
        await self._dialogue_agent.start()
        logger.info("DialogueAgent started")

        # 7. Voice sessions (depend on orchestrator, Tracker)
        self._voice_sessions = VoiceSessionRegistry(
            orchestrator=self._orchestrator,
            transport_factory=self._new_voice_transport,
            tracker=self._tracker,
            history=history,
            config=VoiceConfig(
                model=settings.realtime_model,
                voice=settings.realtime_voice,
                transcription_model=settings.transcription_model,
            ),
            history_limit=settings.history_limit,
        )
        logger.info("All components initialized successfully")

    def _new_voice_transport(self) -> OpenAIRealtimeTransport:
        if self._openai is None:
            raise RuntimeError("OPENAI_API_KEY environment variable not set")
        return OpenAIRealtimeTransport(self._openai)

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        if self._voice_sessions is not None:
            await self._voice_sessions.stop_all()
        if self._dialogue_agent:
            await self._dialogue_agent.stop()
        if self._storage:
            await self._storage.close()
            logger.info("Storage closed")

    async def reset(self) -> None:
        """Reset data between test runs."""
        if self._voice_sessions is not None:
            await self._voice_sessions.stop_all()
        if self._dialogue_agent:
            await self._dialogue_agent.stop()

        if self._storage:
            await self._storage.clear()
            logger.info("Storage cleared")

        if self._dialogue_agent:
            await self._dialogue_agent.start()
            logger.info("Reset complete")

    @property
    def storage(self) -> IStorage:
        """Get storage instance."""
        if not self._storage:
            raise RuntimeError("Application not started")
        return self._storage

    @property
    def dialogue_agent(self) -> DialogueAgent:
        """Get dialogue agent instance."""
        if not self._dialogue_agent:
            raise RuntimeError("Application not started")
        return self._dialogue_agent

    @property
    def image_ingestion(self) -> ImageIngestion:
        if not self._ingestion:
            raise RuntimeError("Application not started")
        return self._ingestion

    @property
    def image_access(self) -> ImageAccess:
        if not self._image_access:
            raise RuntimeError("Application not started")
        return self._image_access

    @property
    def voice_sessions(self) -> VoiceSessionRegistry:
        if self._voice_sessions is None:
            raise RuntimeError("Application not started")
        return self._voice_sessions
