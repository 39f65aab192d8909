"""
Content parser/validator: turns raw provider text into typed records.

Parsing happens in two steps with two distinct failure kinds:

- recovering a JSON payload from free text (ContentMalformed on failure),
  with a bounded sequence of tolerant repairs;
- validating that payload against the pydantic model for the artifact kind
  (ContentInvalid on failure). A payload that only parsed after json_repair
  and still breaks the schema is a truncated response, so it counts as
  ContentMalformed.
"""

import json
import re
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from json_repair import repair_json
from pydantic import BaseModel, ValidationError

from questforge.errors import ContentInvalid, ContentMalformed
from questforge.schemas.content import (
    Introduction,
    ItemSet,
    MainQuest,
    NPCRoster,
    PlayerCharacter,
    QuestLog,
    World,
)
from questforge.utils.logger import get_logger

logger = get_logger(__name__)


# ==================== Tolerant repairs ====================


def _strip_code_fences(text: str) -> str:
    if "```" not in text:
        return text
    match = re.search(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL)
    if match:
        return match.group(1).strip()
    lines = [line for line in text.split("\n") if not line.strip().startswith("```")]
    return "\n".join(lines).strip()


def _slice_payload(text: str) -> str:
    """Cut the outermost JSON object or array out of surrounding prose"""
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return text
    start = min(starts)
    closer = "}" if text[start] == "{" else "]"
    end = text.rfind(closer)
    if end <= start:
        return text[start:]
    return text[start : end + 1]


def _remove_trailing_commas(text: str) -> str:
    return re.sub(r",(\s*[}\]])", r"\1", text)


def _repair_json(text: str) -> str:
    return repair_json(text)


# Applied cumulatively, in order, until json.loads succeeds
REPAIRS: List[Tuple[str, Callable[[str], str]]] = [
    ("raw", str.strip),
    ("strip_code_fences", _strip_code_fences),
    ("slice_payload", _slice_payload),
    ("remove_trailing_commas", _remove_trailing_commas),
    ("json_repair", _repair_json),
]


def recover_payload(kind: str, raw_text: str) -> Tuple[Any, str]:
    """
    Recover a JSON object or array from raw provider output, along with the
    name of the repair that made it parse.

    Raises:
        ContentMalformed: No object/array could be recovered
    """
    text = (raw_text or "").strip()
    if "{" not in text and "[" not in text:
        raise ContentMalformed(kind, "no JSON payload found in response")

    candidate = text
    last_error = ""
    for name, repair in REPAIRS:
        candidate = repair(candidate)
        try:
            payload = json.loads(candidate)
        except (json.JSONDecodeError, TypeError) as e:
            last_error = str(e)
            continue
        if isinstance(payload, (dict, list)):
            if name != "raw":
                logger.debug(f"Recovered {kind} payload after repair '{name}'")
            return payload, name
        last_error = f"payload is {type(payload).__name__}, expected object or array"

    raise ContentMalformed(kind, f"unparsable payload ({last_error})")


def extract_payload(kind: str, raw_text: str) -> Any:
    return recover_payload(kind, raw_text)[0]


# ==================== Per-kind parsers ====================


class KindParser:
    """Validates payloads for one artifact kind"""

    def __init__(self, model: Type[BaseModel], list_field: Optional[str] = None):
        self.model = model
        # Collection kinds accept a bare list and wrap it under this field
        self.list_field = list_field

    def normalize(self, payload: Any) -> Any:
        if self.list_field is None:
            return payload
        if isinstance(payload, list):
            return {self.list_field: payload}
        if isinstance(payload, dict) and self.list_field not in payload:
            lists = [v for v in payload.values() if isinstance(v, list)]
            if len(lists) == 1:
                return {self.list_field: lists[0]}
        return payload

    def validate(self, kind: str, payload: Any) -> BaseModel:
        payload = self.normalize(payload)
        if not isinstance(payload, dict):
            raise ContentMalformed(kind, "expected a JSON object")
        try:
            return self.model.model_validate(payload)
        except ValidationError as e:
            raise ContentInvalid(kind, format_violations(e)) from e


def format_violations(error: ValidationError) -> List[str]:
    """Human-readable list of schema violations, suitable for a repair prompt"""
    violations = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "<root>"
        violations.append(f"{location}: {item.get('msg', 'invalid value')}")
    return violations


DEFAULT_PARSERS: Dict[str, KindParser] = {
    "world": KindParser(World),
    "character": KindParser(PlayerCharacter),
    "npcs.major": KindParser(NPCRoster, list_field="npcs"),
    "npcs.secondary": KindParser(NPCRoster, list_field="npcs"),
    "npcs.generic": KindParser(NPCRoster, list_field="npcs"),
    "quests.main": KindParser(MainQuest),
    "quests.side": KindParser(QuestLog, list_field="quests"),
    "items.player": KindParser(ItemSet, list_field="items"),
    "items.world": KindParser(ItemSet, list_field="items"),
    "introduction": KindParser(Introduction),
}


class ContentParser:
    """
    Parses provider output into validated records, one parser per kind.

    Example:
        >>> parser = ContentParser()
        >>> world = parser.parse("world", response_text)
        >>> world.name
        'Eldoria'
    """

    def __init__(self, parsers: Optional[Dict[str, KindParser]] = None):
        self.parsers = dict(parsers or DEFAULT_PARSERS)

    def _parser_for(self, kind: str) -> KindParser:
        try:
            return self.parsers[kind]
        except KeyError:
            raise ValueError(f"No parser registered for artifact kind: {kind}")

    def parse(self, kind: str, raw_text: str) -> BaseModel:
        """
        Parse and validate raw provider text for an artifact kind.

        Raises:
            ContentMalformed: The text holds no recoverable JSON payload
            ContentInvalid: The payload breaks the schema for the kind
        """
        parser = self._parser_for(kind)
        payload, repair = recover_payload(kind, raw_text)
        if not payload:
            raise ContentMalformed(kind, "empty JSON payload")
        try:
            return parser.validate(kind, payload)
        except ContentInvalid as e:
            # json_repair closes cut-off text, so schema gaps there mean truncation
            if repair != "json_repair":
                raise
            detail = "; ".join(e.violations[:3])
            raise ContentMalformed(kind, f"broken or truncated JSON ({detail})") from e

    def revalidate(self, kind: str, stored: Any) -> BaseModel:
        """Validate an artifact that was already committed to a session"""
        return self._parser_for(kind).validate(kind, stored)


def dump_artifact(record: BaseModel) -> Dict[str, Any]:
    """Serialise a validated record for storage"""
    return record.model_dump(mode="json")
