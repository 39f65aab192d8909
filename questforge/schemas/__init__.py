"""
Pydantic schemas for generated content and game sessions
"""

from .content import (
    ATTRIBUTE_MAX,
    ATTRIBUTE_MIN,
    NPC,
    Attributes,
    Faction,
    Introduction,
    Item,
    ItemSet,
    Location,
    MainQuest,
    NPCRoster,
    PlayerCharacter,
    Quest,
    QuestLog,
    World,
)
from .session import (
    ConversationTurn,
    GameSession,
    SessionPreferences,
    SessionStatus,
)

__all__ = [
    # Generated content
    "World",
    "Location",
    "Faction",
    "Attributes",
    "PlayerCharacter",
    "NPC",
    "NPCRoster",
    "Quest",
    "MainQuest",
    "QuestLog",
    "Item",
    "ItemSet",
    "Introduction",
    "ATTRIBUTE_MIN",
    "ATTRIBUTE_MAX",
    # Sessions
    "SessionStatus",
    "SessionPreferences",
    "ConversationTurn",
    "GameSession",
]
