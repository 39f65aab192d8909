"""
Generated content schema definitions.

One model per artifact kind. The provider is asked to emit JSON matching
these shapes; ContentParser validates against them before anything is
committed to a session.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

ATTRIBUTE_MIN = 8
ATTRIBUTE_MAX = 18

Rarity = Literal["common", "uncommon", "rare", "very_rare", "legendary"]


class ContentModel(BaseModel):
    """Base for generated records: trims strings, keeps unknown narrative keys"""

    class Config:
        str_strip_whitespace = True
        extra = "allow"
        populate_by_name = True


# ==================== World ====================


class Location(ContentModel):
    """A notable place in the world"""

    name: str = Field(..., min_length=1, description="Location name")
    description: str = Field(..., min_length=1, description="What the place is like")


class Faction(ContentModel):
    """A group with its own agenda"""

    name: str = Field(..., min_length=1)
    description: str = Field(default="")


class World(ContentModel):
    """World setting produced by the World stage"""

    name: str = Field(..., min_length=1, description="Name of the world")
    description: str = Field(..., min_length=1, description="World overview narrative")
    setting: str = Field(..., min_length=1, description="Era and general setting")
    themes: List[str] = Field(default_factory=list, description="Story themes")
    tone: str = Field(default="balanced", description="Overall tone")
    locations: List[Location] = Field(..., min_length=1)
    factions: List[Faction] = Field(default_factory=list)
    history: Optional[str] = Field(None, description="Short world history")


# ==================== Player character ====================


class Attributes(ContentModel):
    """The six core attributes, each within the allowed range"""

    strength: int = Field(..., ge=ATTRIBUTE_MIN, le=ATTRIBUTE_MAX)
    dexterity: int = Field(..., ge=ATTRIBUTE_MIN, le=ATTRIBUTE_MAX)
    constitution: int = Field(..., ge=ATTRIBUTE_MIN, le=ATTRIBUTE_MAX)
    intelligence: int = Field(..., ge=ATTRIBUTE_MIN, le=ATTRIBUTE_MAX)
    wisdom: int = Field(..., ge=ATTRIBUTE_MIN, le=ATTRIBUTE_MAX)
    charisma: int = Field(..., ge=ATTRIBUTE_MIN, le=ATTRIBUTE_MAX)


class PlayerCharacter(ContentModel):
    """The main character produced by the Character stage"""

    name: str = Field(..., min_length=1)
    character_class: str = Field(..., min_length=1, alias="class")
    race: str = Field(..., min_length=1)
    background: str = Field(..., min_length=1, description="Backstory narrative")
    attributes: Attributes
    skills: List[str] = Field(..., min_length=1, description="Starting skills")
    level: int = Field(default=1, ge=1)
    personality: Optional[str] = None
    appearance: Optional[str] = None


# ==================== NPCs ====================


class NPC(ContentModel):
    """A non-player character of any tier"""

    name: str = Field(..., min_length=1)
    role: str = Field(..., min_length=1, description="Function in the story")
    description: str = Field(..., min_length=1)
    location: Optional[str] = None
    motivation: Optional[str] = None
    relationship_to_player: Optional[str] = None


class NPCRoster(ContentModel):
    """One tier of NPCs (major, secondary or generic)"""

    npcs: List[NPC] = Field(..., min_length=1)


# ==================== Quests ====================


class Quest(ContentModel):
    """A quest the player can pursue"""

    title: str = Field(..., min_length=1)
    summary: str = Field(..., min_length=1)
    objectives: List[str] = Field(..., min_length=1)
    giver: Optional[str] = Field(None, description="Name of the NPC offering it")
    location: Optional[str] = None
    reward: Optional[str] = None


class MainQuest(Quest):
    """The central quest line"""

    stakes: Optional[str] = Field(None, description="What happens if the player fails")


class QuestLog(ContentModel):
    """A set of side quests"""

    quests: List[Quest] = Field(..., min_length=1)


# ==================== Items ====================


class Item(ContentModel):
    """An object the player can own or find"""

    name: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1, description="weapon, armor, tool, ...")
    description: str = Field(..., min_length=1)
    rarity: Rarity = Field(default="common")
    value: int = Field(default=0, ge=0, description="Value in gold pieces")
    properties: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("rarity", mode="before")
    @classmethod
    def normalize_rarity(cls, v):
        if isinstance(v, str):
            return v.strip().lower().replace(" ", "_").replace("-", "_")
        return v


class ItemSet(ContentModel):
    """Items for the player's starting kit or scattered in the world"""

    items: List[Item] = Field(..., min_length=1)


# ==================== Introduction ====================


class Introduction(ContentModel):
    """Opening narration shown to the player once the world is ready"""

    narrative: str = Field(..., min_length=1)
    suggested_actions: List[str] = Field(default_factory=list)
