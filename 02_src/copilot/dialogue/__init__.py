"""Dialogue module: history assembly and the chat pipeline."""

from .agent import ChatResult, DialogueAgent, IDialogueAgent
from .history import HistoryAssembler

__all__ = ["ChatResult", "DialogueAgent", "IDialogueAgent", "HistoryAssembler"]
