"""
assistant/ — Voice Conversation Controller

Turn-taking between speech capture, the assistant service and speech
playback. The controller owns one ConversationSession at a time and
publishes a SessionSnapshot after every event for the UI to render.
"""

from assistant.controller import ConversationController
from assistant.ports import Subscription, VoiceSelector
from assistant.session import ConnectionStatus, ConversationSession, Phase, SessionSnapshot

__all__ = [
    "ConversationController",
    "ConversationSession",
    "SessionSnapshot",
    "Phase",
    "ConnectionStatus",
    "Subscription",
    "VoiceSelector",
]
