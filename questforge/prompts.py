"""
Prompt templates for the session generation pipeline

This file contains all prompts used by the generation stages. Modify these to
test different behaviors; the JSON shapes must stay in line with
questforge/schemas/content.py.
"""

GAME_MASTER_SYSTEM = """You are the game master of a text role-playing game, preparing a new campaign.

You always answer with a single JSON value and nothing else:
- no markdown code fences
- no commentary before or after the JSON
- use double quotes for every key and string

Be specific and vivid, but concise."""


WORLD_GENERATION_USER = """Create the world for a new campaign.

Player preferences:
{preferences}

Return a JSON object with exactly this shape:
{{
  "name": "World name",
  "description": "2-3 paragraph overview of the world",
  "setting": "Era and general setting",
  "themes": ["theme", "..."],
  "tone": "dark | light | balanced | ...",
  "locations": [{{"name": "Place", "description": "What it is like"}}],
  "factions": [{{"name": "Faction", "description": "Their agenda"}}],
  "history": "A short history of the world"
}}
Include at least 3 locations."""


CHARACTER_GENERATION_USER = """Create the player's main character for this world.

World:
{world}

Player preferences:
{preferences}

Return a JSON object with exactly this shape:
{{
  "name": "Character name",
  "class": "Character class",
  "race": "Race or species",
  "background": "1-2 paragraph backstory tied to the world",
  "attributes": {{
    "strength": 10, "dexterity": 10, "constitution": 10,
    "intelligence": 10, "wisdom": 10, "charisma": 10
  }},
  "skills": ["skill", "..."],
  "level": 1,
  "personality": "Key personality traits",
  "appearance": "Physical description"
}}
Every attribute must be an integer between {attribute_min} and {attribute_max}.
Give at least one starting skill."""


NPC_SHAPE = """{{
  "npcs": [
    {{
      "name": "NPC name",
      "role": "Their function in the story",
      "description": "Appearance and personality",
      "location": "Where they are usually found",
      "motivation": "What they want",
      "relationship_to_player": "How they relate to the main character"
    }}
  ]
}}"""


MAJOR_NPC_GENERATION_USER = """Create the {count} most important non-player characters of the campaign:
allies, rivals and the main antagonist.

World:
{world}

Main character:
{character}

Return a JSON object with exactly this shape:
""" + NPC_SHAPE


SECONDARY_NPC_GENERATION_USER = """Create {count} secondary non-player characters: merchants, informants,
quest givers and lieutenants connected to the major characters below.

World:
{world}

Major characters:
{major_npcs}

Return a JSON object with exactly this shape:
""" + NPC_SHAPE


GENERIC_NPC_GENERATION_USER = """Create {count} generic non-player character archetypes that populate the
world's locations (guards, innkeepers, farmers, ...). Leave "relationship_to_player" empty.

World:
{world}

Return a JSON object with exactly this shape:
""" + NPC_SHAPE


MAIN_QUEST_GENERATION_USER = """Create the main quest line of the campaign.

World:
{world}

Main character:
{character}

Characters in the world:
{npcs}

Return a JSON object with exactly this shape:
{{
  "title": "Quest title",
  "summary": "What the quest is about",
  "objectives": ["First objective", "..."],
  "giver": "Name of the NPC who starts the quest",
  "location": "Where it begins",
  "reward": "What the hero gains",
  "stakes": "What happens if the hero fails"
}}
Use only characters and locations listed above."""


SIDE_QUEST_GENERATION_USER = """Create {count} side quests that complement the main quest without
resolving it.

World:
{world}

Main quest:
{main_quest}

Characters in the world:
{npcs}

Return a JSON object with exactly this shape:
{{
  "quests": [
    {{
      "title": "Quest title",
      "summary": "What the quest is about",
      "objectives": ["Objective", "..."],
      "giver": "NPC name",
      "location": "Location name",
      "reward": "Reward"
    }}
  ]
}}"""


ITEM_SHAPE = """{{
  "items": [
    {{
      "name": "Item name",
      "type": "weapon | armor | tool | consumable | trinket | ...",
      "description": "What it looks like and does",
      "rarity": "common | uncommon | rare | very_rare | legendary",
      "value": 10,
      "properties": {{}}
    }}
  ]
}}"""


STARTING_ITEMS_GENERATION_USER = """Create the starting equipment of the main character: {count} items that
suit their class and background.

Main character:
{character}

Return a JSON object with exactly this shape:
""" + ITEM_SHAPE


WORLD_ITEMS_GENERATION_USER = """Create {count} notable items that can be found in this world: treasures,
relics and curiosities tied to its locations and factions.

World:
{world}

Return a JSON object with exactly this shape:
""" + ITEM_SHAPE


INTRODUCTION_GENERATION_USER = """Write the opening narration that starts the game for the player.

World:
{world}

Main character:
{character}

Key characters:
{npcs}

Main quest:
{main_quest}

Side quests:
{side_quests}

Starting equipment:
{items}

Address the player in the second person, set the scene in one of the world's
locations and end on a moment that invites the player to act. Do not resolve
any quest.

Return a JSON object with exactly this shape:
{{
  "narrative": "The opening narration (2-4 paragraphs)",
  "suggested_actions": ["Action the player could take", "..."]
}}"""


# Retry prompts

STRICT_FORMAT_REMINDER = """

IMPORTANT: Your previous answer could not be read as JSON.
Answer again with ONLY the JSON value described above. Start with "{{" and end
with "}}". No code fences, no explanations."""


CONTENT_REPAIR_PROMPT = """

IMPORTANT: Your previous answer broke these rules:
{violations}

Answer again with the complete corrected JSON value. Keep everything that was
valid, fix only what is listed, and keep numbers inside their allowed ranges."""


# User-facing progress and failure messages

PROGRESS_MESSAGES = {
    "generating_world": "Preparing world...",
    "generating_character": "Creating your character...",
    "generating_npcs": "Populating the world with characters...",
    "generating_quests": "Weaving quests...",
    "generating_items": "Forging items...",
    "finalizing": "Setting the opening scene...",
}

GENERATION_FAILED_MESSAGE = (
    "Something went wrong while preparing your adventure. "
    "Please try again in a moment."
)
