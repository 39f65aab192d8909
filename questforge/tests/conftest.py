"""
Shared fixtures: canned provider output for every stage, a scripted gateway
keyed by stage name, and a throwaway SQLite store.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional

import pytest

from questforge.config import Settings
from questforge.db.manager import DatabaseManager
from questforge.engine.orchestrator import PipelineOrchestrator
from questforge.engine.transport import EventBuffer

ATTRIBUTES = {
    "strength": 12,
    "dexterity": 16,
    "constitution": 13,
    "intelligence": 10,
    "wisdom": 14,
    "charisma": 9,
}

CANNED: Dict[str, Any] = {
    "World": {
        "name": "Eldoria",
        "description": "A land of misty valleys and old ruins.",
        "setting": "Late medieval kingdom",
        "themes": ["exploration", "loyalty"],
        "tone": "hopeful",
        "locations": [
            {"name": "Ravenford", "description": "A river town with a crooked bridge."},
            {"name": "Greywood", "description": "A forest that hides a fallen keep."},
        ],
        "factions": [{"name": "The Silver Hand", "description": "Knights of the crown."}],
    },
    "Character": {
        "name": "Aria",
        "class": "Ranger",
        "race": "Half-elf",
        "background": "Raised by foresters on the edge of Greywood.",
        "attributes": ATTRIBUTES,
        "skills": ["Archery", "Tracking"],
        "level": 1,
    },
    "MajorNPCs": {
        "npcs": [
            {
                "name": "Mira Vale",
                "role": "mentor",
                "description": "An old mage who knows the keep's secrets.",
                "location": "Ravenford",
            }
        ]
    },
    "SecondaryNPCs": [
        {"name": "Tobin", "role": "innkeeper", "description": "Runs the Drowned Lantern."}
    ],
    "GenericNPCs": {
        "npcs": [
            {"name": "Watchman", "role": "guard", "description": "Bored and underpaid."}
        ]
    },
    "MainQuest": {
        "title": "The Shattered Crown",
        "summary": "Recover the crown shards before the eclipse.",
        "objectives": ["Find the first shard", "Enter the fallen keep"],
        "giver": "Mira Vale",
        "stakes": "The kingdom falls to the Hollow King.",
    },
    "SideQuests": {
        "quests": [
            {
                "title": "Lost Shipment",
                "summary": "Tobin's ale never arrived.",
                "objectives": ["Search the river road"],
                "giver": "Tobin",
            }
        ]
    },
    "StartingItems": {
        "items": [
            {
                "name": "Yew Longbow",
                "type": "weapon",
                "description": "A well-worn bow.",
                "rarity": "Common",
                "value": 50,
            }
        ]
    },
    "WorldItems": {
        "items": [
            {
                "name": "Crown Shard",
                "type": "artifact",
                "description": "Warm to the touch.",
                "rarity": "Very Rare",
                "value": 1000,
            }
        ]
    },
    "Introduction": {
        "narrative": "Dawn breaks over Ravenford as Aria reaches the crooked bridge.",
        "suggested_actions": ["Visit the Drowned Lantern", "Seek out Mira Vale"],
    },
}

STAGE_NAMES = list(CANNED)


def canned_text(stage: str) -> str:
    return json.dumps(CANNED[stage])


class ScriptedGateway:
    """
    Stands in for ProviderGateway.

    Each stage returns its canned JSON unless a script is queued for it; a
    queued entry is either text to return or an exception to raise. Every
    call is recorded as (label, prompt, history).
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.scripts: Dict[str, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.timeline: List[tuple] = []
        self.on_call: Optional[Callable[[str], None]] = None

    def script(self, label: str, *outcomes: Any) -> None:
        self.scripts.setdefault(label, []).extend(outcomes)

    def always(self, label: str, outcome: Any, times: int = 10) -> None:
        self.script(label, *([outcome] * times))

    def calls_for(self, label: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["label"] == label]

    @property
    def labels(self) -> List[str]:
        return [c["label"] for c in self.calls]

    async def call(self, prompt: str, history=None, label=None) -> str:
        self.calls.append({"label": label, "prompt": prompt, "history": list(history or [])})
        self.timeline.append(("start", label))
        if self.on_call:
            self.on_call(label)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.timeline.append(("end", label))

        queue = self.scripts.get(label)
        outcome = queue.pop(0) if queue else canned_text(label)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        database_path=str(tmp_path / "questforge.db"),
        openai_api_key="test-key",
        provider_backoff_base=0.0,
    )


@pytest.fixture
def store(tmp_path):
    return DatabaseManager(str(tmp_path / "sessions.db"))


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def transport():
    return EventBuffer(max_events=500)


@pytest.fixture
def orchestrator(store, gateway, transport):
    return PipelineOrchestrator(store, gateway, transport=transport)
