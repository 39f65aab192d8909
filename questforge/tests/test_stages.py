"""
Tests for the stage graph and the stage executor.
"""

import json
from dataclasses import replace

import pytest

from questforge import prompts
from questforge.engine.stages import (
    ARTIFACT_KINDS,
    MACRO_SEQUENCE,
    STAGES,
    STAGES_BY_NAME,
    execute_stage,
    expand_kinds,
    next_macro_state,
    stages_for,
    validate_stage_graph,
)
from questforge.errors import (
    ContentInvalid,
    DependencyMissing,
    ProviderRejected,
    ProviderUnavailable,
    StageFailed,
)
from questforge.schemas.session import SessionStatus

from conftest import CANNED, ScriptedGateway


def committed(*stage_names):
    """Artifacts as the orchestrator would have stored them"""
    artifacts = {}
    for name in stage_names:
        stage = STAGES_BY_NAME[name]
        artifacts[stage.produces] = stage.parse(
            json.dumps(CANNED[name])
        ).model_dump(mode="json")
    return artifacts


UPSTREAM_OF_INTRODUCTION = [
    "World",
    "Character",
    "MajorNPCs",
    "SecondaryNPCs",
    "GenericNPCs",
    "MainQuest",
    "SideQuests",
    "StartingItems",
    "WorldItems",
]


class TestStageGraph:
    """Test the static stage definitions"""

    def test_every_kind_has_one_producer(self):
        assert sorted(s.produces for s in STAGES) == sorted(ARTIFACT_KINDS)

    def test_graph_is_valid(self):
        validate_stage_graph(STAGES)

    def test_group_names_expand(self):
        assert expand_kinds(["world", "npcs"]) == (
            "world",
            "npcs.major",
            "npcs.secondary",
            "npcs.generic",
        )

    def test_introduction_consumes_everything(self):
        intro = STAGES_BY_NAME["Introduction"]
        assert set(intro.artifact_inputs) == set(ARTIFACT_KINDS) - {"introduction"}

    def test_macro_states_in_order(self):
        assert [s.name for s in stages_for(SessionStatus.GENERATING_NPCS)] == [
            "MajorNPCs",
            "SecondaryNPCs",
            "GenericNPCs",
        ]
        assert next_macro_state(SessionStatus.GENERATING_ITEMS) == SessionStatus.FINALIZING
        assert next_macro_state(SessionStatus.FINALIZING) == SessionStatus.ACTIVE
        assert MACRO_SEQUENCE[0] == SessionStatus.GENERATING_WORLD

    def test_later_dependency_is_rejected(self):
        world = replace(STAGES_BY_NAME["World"], requires=("preferences", "character"))
        stages = (world,) + tuple(s for s in STAGES if s.name != "World")

        with pytest.raises(ValueError, match="later macro-state"):
            validate_stage_graph(stages)

    def test_duplicate_producer_is_rejected(self):
        clone = replace(STAGES_BY_NAME["WorldItems"], name="MoreItems")

        with pytest.raises(ValueError, match="more than one producer"):
            validate_stage_graph(STAGES + (clone,))

    def test_cycle_is_rejected(self):
        major = replace(
            STAGES_BY_NAME["MajorNPCs"], requires=("world", "character", "npcs.secondary")
        )
        stages = tuple(major if s.name == "MajorNPCs" else s for s in STAGES)

        with pytest.raises(ValueError, match="cycle"):
            validate_stage_graph(stages)


class TestExecuteStage:
    """Test stage-local retries"""

    @pytest.mark.asyncio
    async def test_success(self):
        gateway = ScriptedGateway()

        result = await execute_stage(STAGES_BY_NAME["World"], {}, {"theme": "noir"}, gateway)

        assert result.produces == "world"
        assert result.attempts == 1
        assert result.macro_state == SessionStatus.GENERATING_WORLD
        assert result.success_status == SessionStatus.GENERATING_CHARACTER
        assert result.artifact["name"] == "Eldoria"
        assert gateway.labels == ["World"]
        assert "noir" in gateway.calls[0]["prompt"]
        assert gateway.calls[0]["history"][0].role == "system"

    @pytest.mark.asyncio
    async def test_missing_dependency_makes_no_call(self):
        gateway = ScriptedGateway()

        with pytest.raises(DependencyMissing) as exc_info:
            await execute_stage(STAGES_BY_NAME["SideQuests"], committed("World"), {}, gateway)

        assert "quests.main" in exc_info.value.missing
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_malformed_output_is_retried_with_reminder(self):
        gateway = ScriptedGateway()
        gateway.script("World", "Once upon a time...", "Still no json")

        result = await execute_stage(STAGES_BY_NAME["World"], {}, {}, gateway)

        assert result.attempts == 3
        assert len(gateway.calls) == 3
        retry = gateway.calls[1]
        assert retry["prompt"] == prompts.STRICT_FORMAT_REMINDER.format().strip()
        assert [t.role for t in retry["history"]] == ["system", "user", "assistant"]
        assert retry["history"][2].content == "Once upon a time..."
        assert gateway.calls[2]["history"][2].content == "Still no json"

    @pytest.mark.asyncio
    async def test_invalid_output_gets_repair_prompt(self):
        bad = dict(CANNED["Character"], attributes=dict(CANNED["Character"]["attributes"], strength=30))
        gateway = ScriptedGateway()
        gateway.script("Character", json.dumps(bad))

        result = await execute_stage(
            STAGES_BY_NAME["Character"], committed("World"), {}, gateway
        )

        assert result.attempts == 2
        repair_prompt = gateway.calls[1]["prompt"]
        assert "attributes.strength" in repair_prompt
        assert "broke these rules" in repair_prompt

    @pytest.mark.asyncio
    async def test_unavailable_provider_resends_original_prompt(self):
        gateway = ScriptedGateway()
        gateway.script("World", ProviderUnavailable("down", attempts=3))

        result = await execute_stage(STAGES_BY_NAME["World"], {}, {}, gateway)

        assert result.attempts == 2
        assert gateway.calls[0]["prompt"] == gateway.calls[1]["prompt"]
        assert len(gateway.calls[1]["history"]) == 1

    @pytest.mark.asyncio
    async def test_rejected_fails_immediately(self):
        gateway = ScriptedGateway()
        gateway.script("World", ProviderRejected("bad key"))

        with pytest.raises(StageFailed) as exc_info:
            await execute_stage(STAGES_BY_NAME["World"], {}, {}, gateway)

        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.cause, ProviderRejected)
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self):
        gateway = ScriptedGateway()
        gateway.always("World", "not json at all")

        with pytest.raises(StageFailed) as exc_info:
            await execute_stage(STAGES_BY_NAME["World"], {}, {}, gateway, max_attempts=3)

        assert exc_info.value.stage == "World"
        assert exc_info.value.attempts == 3
        assert "malformed" in exc_info.value.reason
        assert len(gateway.calls) == 3

    @pytest.mark.asyncio
    async def test_invalid_until_exhausted(self):
        gateway = ScriptedGateway()
        gateway.always("Introduction", '{"suggested_actions": []}')

        with pytest.raises(StageFailed) as exc_info:
            await execute_stage(
                STAGES_BY_NAME["Introduction"],
                committed(*UPSTREAM_OF_INTRODUCTION),
                {},
                gateway,
                max_attempts=2,
            )

        assert isinstance(exc_info.value.cause, ContentInvalid)
        assert len(gateway.calls) == 2

    @pytest.mark.asyncio
    async def test_prompts_carry_upstream_content(self):
        gateway = ScriptedGateway()

        await execute_stage(
            STAGES_BY_NAME["SideQuests"],
            committed("World", "Character", "MajorNPCs", "SecondaryNPCs", "GenericNPCs", "MainQuest"),
            {"side_quest_count": 2},
            gateway,
        )

        prompt = gateway.calls[0]["prompt"]
        assert "The Shattered Crown" in prompt
        assert "Tobin" in prompt
        assert "Eldoria" in prompt
