"""FastAPI application setup."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..app import Application
from ..exceptions import (
    ConversationNotFoundError,
    InvalidTransitionError,
    PersistenceError,
    StorageNotConfiguredError,
    ValidationError,
    VoiceSessionNotFoundError,
)
from ..logging_config import get_logger
from .routes import chat, conversations, observability, voice

logger = get_logger(__name__)


# Global application instance
_app: Application | None = None


def get_app() -> Application:
    """Get the global application instance."""
    global _app
    if not _app:
        _app = Application()
    return _app


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    application = app.state.application
    await application.start()
    yield
    if chat.detached_turns:
        # Let turns whose clients disconnected finish storing their replies
        await asyncio.gather(*list(chat.detached_turns), return_exceptions=True)
    await application.stop()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def register_exception_handlers(fastapi_app: FastAPI) -> None:
    """Map domain exceptions to HTTP responses."""

    @fastapi_app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @fastapi_app.exception_handler(ConversationNotFoundError)
    async def conversation_not_found(request: Request, exc: ConversationNotFoundError):
        return _error(404, "Conversation not found")

    @fastapi_app.exception_handler(VoiceSessionNotFoundError)
    async def voice_session_not_found(request: Request, exc: VoiceSessionNotFoundError):
        return _error(404, "Voice session not found")

    @fastapi_app.exception_handler(InvalidTransitionError)
    async def invalid_transition(request: Request, exc: InvalidTransitionError):
        return _error(409, str(exc))

    @fastapi_app.exception_handler(StorageNotConfiguredError)
    async def storage_not_configured(request: Request, exc: StorageNotConfiguredError):
        logger.error(f"Object storage not configured: {exc}")
        return _error(500, "Image storage is not configured")

    @fastapi_app.exception_handler(PersistenceError)
    async def persistence_error(request: Request, exc: PersistenceError):
        return _error(500, "Failed to save the response")


def create_fastapi_app(application: Application | None = None) -> FastAPI:
    """Create and configure FastAPI application."""
    application = application or get_app()
    fastapi_app = FastAPI(
        title="Field Copilot API",
        description="Chat, image and voice API for the field service copilot",
        version="0.1.0",
        lifespan=lifespan,
    )
    fastapi_app.state.application = application

    fastapi_app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:5174"],  # Vite default
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(fastapi_app)

    fastapi_app.include_router(conversations.create_conversations_router(application))
    fastapi_app.include_router(chat.create_chat_router(application))
    fastapi_app.include_router(voice.create_voice_router(application))
    fastapi_app.include_router(observability.create_observability_router(application))

    return fastapi_app
