"""Field copilot backend."""

from .app import Application, IApplication
from .config import Settings
from .dialogue import DialogueAgent, HistoryAssembler, IDialogueAgent
from .event_bus import EventBus, IEventBus
from .images import ImageAccess, ImageIngestion, ImageSummarizer
from .llm import EmbeddingProvider, IEmbeddingProvider, ILLMProvider, LLMProvider
from .models import (
    Attachment,
    Conversation,
    ImageFile,
    Message,
    ToolCall,
    TraceEvent,
    Turn,
    VoiceTopic,
)
from .storage import GCSObjectStore, IObjectStore, IStorage, Storage
from .tracker import ITracker, Tracker
from .voice import VoiceBridge, VoiceSessionRegistry

__all__ = [
    # Application
    "Application",
    "IApplication",
    "Settings",
    # Models
    "Conversation",
    "Message",
    "Attachment",
    "ImageFile",
    "ToolCall",
    "Turn",
    "VoiceTopic",
    "TraceEvent",
    # Components
    "IStorage",
    "Storage",
    "IObjectStore",
    "GCSObjectStore",
    "IEventBus",
    "EventBus",
    "ITracker",
    "Tracker",
    "ILLMProvider",
    "LLMProvider",
    "IEmbeddingProvider",
    "EmbeddingProvider",
    "IDialogueAgent",
    "DialogueAgent",
    "HistoryAssembler",
    "ImageAccess",
    "ImageIngestion",
    "ImageSummarizer",
    "VoiceBridge",
    "VoiceSessionRegistry",
]
