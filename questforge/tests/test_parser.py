"""
Tests for payload recovery and per-kind validation of generated content.
"""

import json

import pytest

from questforge.engine.parser import ContentParser, dump_artifact, extract_payload
from questforge.errors import ContentInvalid, ContentMalformed
from questforge.schemas.content import ItemSet, NPCRoster, PlayerCharacter, World

from conftest import CANNED


class TestExtractPayload:
    """Test tolerant JSON recovery"""

    def test_plain_json(self):
        assert extract_payload("world", '{"name": "Eldoria"}') == {"name": "Eldoria"}

    def test_code_fences(self):
        text = 'Here is the world:\n```json\n{"name": "Eldoria"}\n```\nEnjoy!'
        assert extract_payload("world", text) == {"name": "Eldoria"}

    def test_surrounding_prose(self):
        text = 'Sure! {"name": "Eldoria", "tone": "grim"} Let me know if you need more.'
        assert extract_payload("world", text) == {"name": "Eldoria", "tone": "grim"}

    def test_top_level_array(self):
        assert extract_payload("npcs.major", '[{"name": "Mira"}]') == [{"name": "Mira"}]

    def test_trailing_commas(self):
        text = '{"name": "Eldoria", "themes": ["war", "hope",],}'
        assert extract_payload("world", text) == {
            "name": "Eldoria",
            "themes": ["war", "hope"],
        }

    def test_single_quotes_repaired(self):
        payload = extract_payload("world", "{'name': 'Eldoria'}")
        assert payload == {"name": "Eldoria"}

    def test_truncated_output_repaired(self):
        payload = extract_payload("world", '{"name": "Eldoria", "themes": ["war"')
        assert payload["name"] == "Eldoria"
        assert payload["themes"] == ["war"]

    def test_no_payload(self):
        with pytest.raises(ContentMalformed) as exc_info:
            extract_payload("world", "I'm sorry, I can't help with that.")
        assert exc_info.value.kind == "world"

    def test_empty_text(self):
        with pytest.raises(ContentMalformed):
            extract_payload("world", "")


class TestContentParser:
    """Test validation against the content models"""

    def setup_method(self):
        self.parser = ContentParser()

    def test_parse_world(self):
        world = self.parser.parse("world", json.dumps(CANNED["World"]))
        assert isinstance(world, World)
        assert world.name == "Eldoria"
        assert len(world.locations) == 2

    def test_character_class_alias(self):
        character = self.parser.parse("character", json.dumps(CANNED["Character"]))
        assert isinstance(character, PlayerCharacter)
        assert character.character_class == "Ranger"

    def test_attribute_out_of_range(self):
        data = json.loads(json.dumps(CANNED["Character"]))
        data["attributes"]["strength"] = 25

        with pytest.raises(ContentInvalid) as exc_info:
            self.parser.parse("character", json.dumps(data))

        assert any("attributes.strength" in v for v in exc_info.value.violations)

    def test_missing_required_field(self):
        data = dict(CANNED["World"])
        del data["locations"]

        with pytest.raises(ContentInvalid) as exc_info:
            self.parser.parse("world", json.dumps(data))

        assert any(v.startswith("locations") for v in exc_info.value.violations)

    def test_bare_list_is_wrapped(self):
        roster = self.parser.parse("npcs.secondary", json.dumps(CANNED["SecondaryNPCs"]))
        assert isinstance(roster, NPCRoster)
        assert roster.npcs[0].name == "Tobin"

    def test_single_list_under_other_key(self):
        text = json.dumps({"characters": CANNED["MajorNPCs"]["npcs"]})
        roster = self.parser.parse("npcs.major", text)
        assert roster.npcs[0].name == "Mira Vale"

    def test_empty_collection_is_invalid(self):
        with pytest.raises(ContentInvalid):
            self.parser.parse("npcs.generic", '{"npcs": []}')

    def test_rarity_is_normalised(self):
        items = self.parser.parse("items.world", json.dumps(CANNED["WorldItems"]))
        assert isinstance(items, ItemSet)
        assert items.items[0].rarity == "very_rare"

    def test_unknown_rarity_is_invalid(self):
        data = {"items": [{"name": "Rock", "type": "junk", "description": "A rock", "rarity": "mythic"}]}
        with pytest.raises(ContentInvalid):
            self.parser.parse("items.player", json.dumps(data))

    def test_lone_brace_is_malformed(self):
        with pytest.raises(ContentMalformed):
            self.parser.parse("world", "{")

    def test_empty_object_is_malformed(self):
        with pytest.raises(ContentMalformed):
            self.parser.parse("world", "Here you go: {}")

    def test_truncated_response_is_malformed(self):
        with pytest.raises(ContentMalformed) as exc_info:
            self.parser.parse("world", '{"name": "Eld')

        assert "truncated" in str(exc_info.value)

    def test_scalar_for_object_kind(self):
        with pytest.raises(ContentMalformed):
            self.parser.parse("world", '["Eldoria"]')

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            self.parser.parse("spells", "{}")

    def test_revalidate_stored_artifact(self):
        character = self.parser.parse("character", json.dumps(CANNED["Character"]))
        stored = dump_artifact(character)

        assert stored["character_class"] == "Ranger"
        again = self.parser.revalidate("character", stored)
        assert again.character_class == "Ranger"

    def test_revalidate_rejects_corrupt_artifact(self):
        with pytest.raises(ContentInvalid):
            self.parser.revalidate("introduction", {"suggested_actions": []})
