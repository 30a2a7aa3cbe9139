"""Voice session routes."""

import asyncio
import base64
import binascii
import json
from collections.abc import AsyncIterator
from dataclasses import replace
from typing import Literal

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ...app import Application
from ...exceptions import ConversationNotFoundError, ValidationError
from ...models import BusMessage, VoiceTopic
from ...voice import VoiceSession, VoiceState, semantic_vad, server_vad
from .chat import HEARTBEAT_SECONDS, SSE_HEADERS


class StartRequest(BaseModel):
    conversation_id: str
    user_id: str
    turn_detection: Literal["semantic", "server"] = "semantic"
    respond_to_partials: bool = True


class SessionRequest(BaseModel):
    session_id: str


class AudioRequest(BaseModel):
    session_id: str
    audio_base64: str
    commit: bool = False


class TextRequest(BaseModel):
    session_id: str
    text: str


class ExpireRequest(BaseModel):
    max_idle_seconds: float = Field(300.0, ge=0)


def create_voice_router(app: Application) -> APIRouter:
    """Create voice router."""
    router = APIRouter(prefix="/api/voice", tags=["voice"])

    @router.post("/session/start")
    async def start_session(request: StartRequest) -> dict:
        """Open a realtime voice session bridged to a conversation."""
        if await app.storage.get_conversation(request.conversation_id) is None:
            raise ConversationNotFoundError(request.conversation_id)

        registry = app.voice_sessions
        config = replace(
            registry.default_config,
            turn_detection=(
                server_vad() if request.turn_detection == "server" else semantic_vad()
            ),
        )
        session = await registry.create(
            request.conversation_id,
            user_id=request.user_id,
            config=config,
            respond_to_partials=request.respond_to_partials,
        )
        return {"session_id": session.id}

    @router.post("/audio")
    async def send_audio(request: AudioRequest) -> dict:
        """Append a base64 PCM chunk to the session's input buffer."""
        try:
            audio = base64.b64decode(request.audio_base64, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("audio_base64 is not valid base64")
        session = app.voice_sessions.get(request.session_id)
        await session.bridge.send_audio(audio, commit=request.commit)
        return {"ok": True}

    @router.post("/text")
    async def send_text(request: TextRequest) -> dict:
        """Send already transcribed user text into the session."""
        session = app.voice_sessions.get(request.session_id)
        await session.bridge.send_text(request.text)
        return {"ok": True}

    @router.get("/stream")
    async def stream(session_id: str = Query(...)) -> StreamingResponse:
        """Server-sent transcript, audio and assistant text events of a session."""
        session = app.voice_sessions.get(session_id)
        return StreamingResponse(
            stream_session(session), media_type="text/event-stream", headers=SSE_HEADERS
        )

    @router.post("/session/stop")
    async def stop_session(request: SessionRequest) -> dict:
        await app.voice_sessions.destroy(request.session_id)
        return {"ok": True}

    @router.post("/sessions/expire")
    async def expire_sessions(request: ExpireRequest) -> dict:
        expired = await app.voice_sessions.expire_idle(request.max_idle_seconds)
        return {"expired": expired}

    return router


async def stream_session(session: VoiceSession) -> AsyncIterator[str]:
    queue: asyncio.Queue[BusMessage] = asyncio.Queue()

    async def forward(message: BusMessage) -> None:
        queue.put_nowait(message)

    for topic in VoiceTopic:
        session.bus.subscribe(topic, forward)
    try:
        while True:
            try:
                message = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                if session.bridge.state == VoiceState.DISCONNECTED:
                    break
                yield ":\n\n"
                continue
            session.touch()
            yield f"event: {message.topic.value}\ndata: {json.dumps(message.payload)}\n\n"
    finally:
        for topic in VoiceTopic:
            session.bus.unsubscribe(topic, forward)
