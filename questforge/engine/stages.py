"""
Generation stages.

A stage is a static description of one generation step: which artifact kinds
it consumes, which kind it produces, how it builds its prompt and how its
output is parsed. Stages are defined once at import time and shared by every
session. `execute_stage` runs one stage against a session's artifacts; it
never touches storage, so persistence stays with the orchestrator.
"""

import json
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Container, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel

from questforge import prompts
from questforge.engine.parser import ContentParser, dump_artifact
from questforge.errors import (
    ContentInvalid,
    ContentMalformed,
    DependencyMissing,
    ProviderRejected,
    ProviderUnavailable,
    StageFailed,
)
from questforge.schemas.content import ATTRIBUTE_MAX, ATTRIBUTE_MIN
from questforge.schemas.session import ConversationTurn, SessionStatus
from questforge.utils.logger import get_logger

logger = get_logger(__name__)

PREFERENCES = "preferences"

ARTIFACT_GROUPS: Dict[str, Tuple[str, ...]] = {
    "npcs": ("npcs.major", "npcs.secondary", "npcs.generic"),
    "quests": ("quests.main", "quests.side"),
    "items": ("items.player", "items.world"),
}

ARTIFACT_KINDS: Tuple[str, ...] = (
    "world",
    "character",
    "npcs.major",
    "npcs.secondary",
    "npcs.generic",
    "quests.main",
    "quests.side",
    "items.player",
    "items.world",
    "introduction",
)


def expand_kinds(kinds: Iterable[str]) -> Tuple[str, ...]:
    """Expand group names (npcs, quests, items) into their sub-kinds"""
    expanded: List[str] = []
    for kind in kinds:
        for sub in ARTIFACT_GROUPS.get(kind, (kind,)):
            if sub not in expanded:
                expanded.append(sub)
    return tuple(expanded)


PromptBuilder = Callable[[Mapping[str, Any], Mapping[str, Any]], str]


@dataclass(frozen=True)
class StageDescriptor:
    """Static definition of a generation step"""

    name: str
    macro_state: SessionStatus
    requires: Tuple[str, ...]
    produces: str
    build_prompt: PromptBuilder
    parse: Callable[[str], BaseModel]

    @property
    def artifact_inputs(self) -> Tuple[str, ...]:
        return tuple(k for k in self.requires if k != PREFERENCES)

    def missing_inputs(self, artifacts: Container[str]) -> List[str]:
        return [k for k in self.artifact_inputs if k not in artifacts]

    def is_ready(self, artifacts: Container[str]) -> bool:
        return not self.missing_inputs(artifacts)


@dataclass
class StageResult:
    """Output of a successful stage execution"""

    stage: str
    produces: str
    artifact: Dict[str, Any]
    attempts: int
    macro_state: SessionStatus

    @property
    def success_status(self) -> SessionStatus:
        """Status the session moves to once the stage's macro-state has fully committed"""
        return next_macro_state(self.macro_state)


# ==================== Prompt context helpers ====================


def _dumps(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


def _count(preferences: Mapping[str, Any], key: str, default: int) -> int:
    try:
        return max(1, int(preferences.get(key, default)))
    except (TypeError, ValueError):
        return default


def _world_summary(artifacts: Mapping[str, Any]) -> str:
    world = artifacts["world"]
    summary = {
        "name": world.get("name"),
        "setting": world.get("setting"),
        "tone": world.get("tone"),
        "themes": world.get("themes", []),
        "description": world.get("description"),
        "locations": [loc.get("name") for loc in world.get("locations", [])],
        "factions": [f.get("name") for f in world.get("factions", [])],
    }
    return _dumps(summary)


def _character_summary(artifacts: Mapping[str, Any]) -> str:
    character = artifacts["character"]
    summary = {
        key: character.get(key)
        for key in ("name", "character_class", "race", "background", "skills", "level")
    }
    return _dumps(summary)


def _npc_lines(npcs: List[Dict[str, Any]]) -> List[str]:
    return [f"- {npc.get('name')} ({npc.get('role')})" for npc in npcs]


def _all_npcs(artifacts: Mapping[str, Any]) -> str:
    lines: List[str] = []
    for kind in ARTIFACT_GROUPS["npcs"]:
        tier = kind.split(".", 1)[1]
        npcs = artifacts[kind].get("npcs", [])
        lines.append(f"{tier.capitalize()}:")
        lines.extend(_npc_lines(npcs))
    return "\n".join(lines)


# ==================== Prompt builders ====================


def build_world_prompt(artifacts, preferences) -> str:
    return prompts.WORLD_GENERATION_USER.format(preferences=_dumps(dict(preferences)))


def build_character_prompt(artifacts, preferences) -> str:
    return prompts.CHARACTER_GENERATION_USER.format(
        world=_world_summary(artifacts),
        preferences=_dumps(dict(preferences)),
        attribute_min=ATTRIBUTE_MIN,
        attribute_max=ATTRIBUTE_MAX,
    )


def build_major_npcs_prompt(artifacts, preferences) -> str:
    return prompts.MAJOR_NPC_GENERATION_USER.format(
        count=_count(preferences, "major_npc_count", 3),
        world=_world_summary(artifacts),
        character=_character_summary(artifacts),
    )


def build_secondary_npcs_prompt(artifacts, preferences) -> str:
    return prompts.SECONDARY_NPC_GENERATION_USER.format(
        count=_count(preferences, "secondary_npc_count", 4),
        world=_world_summary(artifacts),
        major_npcs=_dumps(artifacts["npcs.major"].get("npcs", [])),
    )


def build_generic_npcs_prompt(artifacts, preferences) -> str:
    return prompts.GENERIC_NPC_GENERATION_USER.format(
        count=_count(preferences, "generic_npc_count", 5),
        world=_world_summary(artifacts),
    )


def build_main_quest_prompt(artifacts, preferences) -> str:
    return prompts.MAIN_QUEST_GENERATION_USER.format(
        world=_world_summary(artifacts),
        character=_character_summary(artifacts),
        npcs=_all_npcs(artifacts),
    )


def build_side_quests_prompt(artifacts, preferences) -> str:
    return prompts.SIDE_QUEST_GENERATION_USER.format(
        count=_count(preferences, "side_quest_count", 3),
        world=_world_summary(artifacts),
        main_quest=_dumps(artifacts["quests.main"]),
        npcs=_all_npcs(artifacts),
    )


def build_starting_items_prompt(artifacts, preferences) -> str:
    return prompts.STARTING_ITEMS_GENERATION_USER.format(
        count=_count(preferences, "starting_item_count", 4),
        character=_character_summary(artifacts),
    )


def build_world_items_prompt(artifacts, preferences) -> str:
    return prompts.WORLD_ITEMS_GENERATION_USER.format(
        count=_count(preferences, "world_item_count", 5),
        world=_world_summary(artifacts),
    )


def build_introduction_prompt(artifacts, preferences) -> str:
    side_quests = artifacts["quests.side"].get("quests", [])
    return prompts.INTRODUCTION_GENERATION_USER.format(
        world=_world_summary(artifacts),
        character=_character_summary(artifacts),
        npcs="\n".join(_npc_lines(artifacts["npcs.major"].get("npcs", []))),
        main_quest=_dumps(
            {k: artifacts["quests.main"].get(k) for k in ("title", "summary", "giver")}
        ),
        side_quests="\n".join(f"- {q.get('title')}" for q in side_quests),
        items="\n".join(
            f"- {item.get('name')}"
            for item in artifacts["items.player"].get("items", [])
        ),
    )


# ==================== Stage definitions ====================

_parser = ContentParser()


def _stage(
    name: str,
    macro_state: SessionStatus,
    requires: Iterable[str],
    produces: str,
    build_prompt: PromptBuilder,
) -> StageDescriptor:
    return StageDescriptor(
        name=name,
        macro_state=macro_state,
        requires=expand_kinds(requires),
        produces=produces,
        build_prompt=build_prompt,
        parse=partial(_parser.parse, produces),
    )


STAGES: Tuple[StageDescriptor, ...] = (
    _stage("World", SessionStatus.GENERATING_WORLD, [PREFERENCES], "world", build_world_prompt),
    _stage(
        "Character",
        SessionStatus.GENERATING_CHARACTER,
        [PREFERENCES, "world"],
        "character",
        build_character_prompt,
    ),
    _stage(
        "MajorNPCs",
        SessionStatus.GENERATING_NPCS,
        ["world", "character"],
        "npcs.major",
        build_major_npcs_prompt,
    ),
    _stage(
        "SecondaryNPCs",
        SessionStatus.GENERATING_NPCS,
        ["world", "npcs.major"],
        "npcs.secondary",
        build_secondary_npcs_prompt,
    ),
    _stage(
        "GenericNPCs",
        SessionStatus.GENERATING_NPCS,
        ["world"],
        "npcs.generic",
        build_generic_npcs_prompt,
    ),
    _stage(
        "MainQuest",
        SessionStatus.GENERATING_QUESTS,
        ["world", "character", "npcs"],
        "quests.main",
        build_main_quest_prompt,
    ),
    _stage(
        "SideQuests",
        SessionStatus.GENERATING_QUESTS,
        ["world", "quests.main", "npcs"],
        "quests.side",
        build_side_quests_prompt,
    ),
    _stage(
        "StartingItems",
        SessionStatus.GENERATING_ITEMS,
        ["character"],
        "items.player",
        build_starting_items_prompt,
    ),
    _stage(
        "WorldItems",
        SessionStatus.GENERATING_ITEMS,
        ["world"],
        "items.world",
        build_world_items_prompt,
    ),
    _stage(
        "Introduction",
        SessionStatus.FINALIZING,
        ["world", "character", "npcs", "quests", "items"],
        "introduction",
        build_introduction_prompt,
    ),
)

STAGES_BY_NAME: Dict[str, StageDescriptor] = {stage.name: stage for stage in STAGES}

# Macro-states in pipeline order, each followed by the status it advances to
MACRO_SEQUENCE: Tuple[SessionStatus, ...] = (
    SessionStatus.GENERATING_WORLD,
    SessionStatus.GENERATING_CHARACTER,
    SessionStatus.GENERATING_NPCS,
    SessionStatus.GENERATING_QUESTS,
    SessionStatus.GENERATING_ITEMS,
    SessionStatus.FINALIZING,
)


def stages_for(
    macro_state: SessionStatus, stages: Iterable[StageDescriptor] = STAGES
) -> List[StageDescriptor]:
    return [stage for stage in stages if stage.macro_state == macro_state]


def next_macro_state(macro_state: SessionStatus) -> SessionStatus:
    index = MACRO_SEQUENCE.index(macro_state)
    if index + 1 < len(MACRO_SEQUENCE):
        return MACRO_SEQUENCE[index + 1]
    return SessionStatus.ACTIVE


def validate_stage_graph(stages: Iterable[StageDescriptor] = STAGES) -> None:
    """
    Check that every consumed kind is produced by a stage in the same or an
    earlier macro-state, that each kind has one producer, and that there are
    no cycles inside a macro-state.

    Raises:
        ValueError: The stage graph cannot be executed
    """
    stages = list(stages)
    producers: Dict[str, StageDescriptor] = {}
    for stage in stages:
        if stage.produces in producers:
            raise ValueError(f"Artifact {stage.produces} has more than one producer")
        if stage.macro_state not in MACRO_SEQUENCE:
            raise ValueError(f"Stage {stage.name} has no pipeline macro-state")
        producers[stage.produces] = stage

    for stage in stages:
        for kind in stage.artifact_inputs:
            producer = producers.get(kind)
            if producer is None:
                raise ValueError(f"Stage {stage.name} consumes unknown artifact {kind}")
            if MACRO_SEQUENCE.index(producer.macro_state) > MACRO_SEQUENCE.index(
                stage.macro_state
            ):
                raise ValueError(
                    f"Stage {stage.name} consumes {kind}, produced in a later macro-state"
                )

    # Every macro-state must drain by repeatedly running ready stages
    available: set = set()
    for macro_state in MACRO_SEQUENCE:
        pending = stages_for(macro_state, stages)
        while pending:
            ready = [s for s in pending if s.is_ready(available)]
            if not ready:
                names = ", ".join(s.name for s in pending)
                raise ValueError(f"Dependency cycle between stages: {names}")
            available.update(s.produces for s in ready)
            pending = [s for s in pending if s not in ready]


validate_stage_graph()


# ==================== Execution ====================


def _system_turn() -> ConversationTurn:
    return ConversationTurn(role="system", content=prompts.GAME_MASTER_SYSTEM)


def _describe_failure(error: Optional[Exception]) -> str:
    if isinstance(error, ContentMalformed):
        return f"content malformed ({error})"
    if isinstance(error, ContentInvalid):
        return f"content invalid ({error})"
    if isinstance(error, ProviderUnavailable):
        return "provider unavailable"
    return str(error) if error else "unknown failure"


async def execute_stage(
    stage: StageDescriptor,
    artifacts: Mapping[str, Any],
    preferences: Mapping[str, Any],
    gateway: Any,
    max_attempts: int = 3,
) -> StageResult:
    """
    Run one stage: build the prompt, call the gateway, parse and validate.

    Malformed output is retried with a stricter format reminder, invalid
    output with a repair prompt listing the violations, and an unavailable
    provider with the original prompt. Each of these uses one attempt.

    Args:
        stage: The stage to execute
        artifacts: Committed artifacts of the session
        preferences: Session preferences
        gateway: Object exposing `await call(prompt, history, label=...)`
        max_attempts: Total attempts before the stage fails

    Returns:
        StageResult carrying the serialised artifact

    Raises:
        DependencyMissing: A required artifact is absent
        StageFailed: Attempts exhausted or the provider rejected the request
    """
    missing = stage.missing_inputs(artifacts)
    if missing:
        raise DependencyMissing(stage.name, missing)

    base_prompt = stage.build_prompt(artifacts, preferences)
    base_history = [_system_turn()]
    prompt, history = base_prompt, list(base_history)
    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        logger.debug(
            f"[Stage] {stage.name}: attempt {attempt}/{max_attempts}",
            extra={"component": "Stage", "stage": stage.name, "attempt": attempt},
        )
        try:
            raw = await gateway.call(prompt, history, label=stage.name)
        except ProviderRejected as e:
            raise StageFailed(
                stage.name, "provider rejected the request", attempt, cause=e
            ) from e
        except ProviderUnavailable as e:
            last_error = e
            prompt, history = base_prompt, list(base_history)
            logger.warning(
                f"[Stage] {stage.name}: provider unavailable on attempt {attempt}",
                extra={"component": "Stage", "stage": stage.name},
            )
            continue

        try:
            record = stage.parse(raw)
        except ContentMalformed as e:
            last_error = e
            history = base_history + [
                ConversationTurn(role="user", content=base_prompt),
                ConversationTurn(role="assistant", content=raw),
            ]
            prompt = prompts.STRICT_FORMAT_REMINDER.format().strip()
        except ContentInvalid as e:
            last_error = e
            history = base_history + [
                ConversationTurn(role="user", content=base_prompt),
                ConversationTurn(role="assistant", content=raw),
            ]
            violations = "\n".join(f"- {v}" for v in e.violations)
            prompt = prompts.CONTENT_REPAIR_PROMPT.format(violations=violations).strip()
        else:
            logger.info(
                f"[Stage] {stage.name} produced {stage.produces} (attempt {attempt})",
                extra={"component": "Stage", "stage": stage.name, "attempt": attempt},
            )
            return StageResult(
                stage=stage.name,
                produces=stage.produces,
                artifact=dump_artifact(record),
                attempts=attempt,
                macro_state=stage.macro_state,
            )

        logger.warning(
            f"[Stage] {stage.name}: attempt {attempt}/{max_attempts} rejected: {last_error}",
            extra={"component": "Stage", "stage": stage.name, "attempt": attempt},
        )

    raise StageFailed(
        stage.name, _describe_failure(last_error), max_attempts, cause=last_error
    ) from last_error
