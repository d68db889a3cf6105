"""Model transport — streaming chat models and history preparation."""

from sheetgate.llm.client import ChatMessage, ChatModel, NullChatModel, TextDelta, ToolCall
from sheetgate.llm.history import build_messages
from sheetgate.llm.openai import OpenAIChatModel, build_chat_model

__all__ = [
    "ChatMessage",
    "ChatModel",
    "NullChatModel",
    "OpenAIChatModel",
    "TextDelta",
    "ToolCall",
    "build_chat_model",
    "build_messages",
]
