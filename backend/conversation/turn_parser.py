"""Parse the structured tail of an assistant reply.

Replies end with ``<metadata>{json}</metadata>`` and may contain a
``<memory_update>...</memory_update>`` block. Both are removed from the
visible text. The metadata is untrusted model output: malformed JSON or
unexpected field types fall back to defaults instead of failing the turn.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from backend.conversation.models import AgentAction, FormOption, TurnMetadata

logger = logging.getLogger(__name__)

MAX_SUGGESTED_QUESTIONS = 4
MAX_MEMORY_CHARS = 200

_METADATA_BLOCK = re.compile(r"<metadata>\s*(.*?)\s*</metadata>", re.DOTALL)
_MEMORY_BLOCK = re.compile(r"<memory_update>\s*(.*?)\s*</memory_update>", re.DOTALL)
# An unterminated block at the end of a truncated reply
_DANGLING_METADATA = re.compile(r"<metadata>.*\Z", re.DOTALL)


@dataclass
class ParsedReply:
    text: str
    metadata: TurnMetadata
    memory_update: Optional[str] = None


def _string_list(value, limit: Optional[int] = None) -> list[str]:
    if not isinstance(value, list):
        return []
    items = [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]
    return items[:limit] if limit else items


def _form_options(value) -> list[FormOption]:
    if not isinstance(value, list):
        return []
    options = []
    for item in value:
        label = item.get("label") if isinstance(item, dict) else item
        if isinstance(label, str) and label.strip():
            options.append(FormOption(label=label.strip()))
    return options


def _agent_action(value) -> Optional[AgentAction]:
    try:
        return AgentAction(value) if value else None
    except ValueError:
        return None


def parse_metadata(raw: str) -> TurnMetadata:
    """Turn the JSON inside a <metadata> block into TurnMetadata, field by field."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Assistant metadata is not valid JSON, using defaults")
        return TurnMetadata()
    if not isinstance(data, dict):
        logger.warning("Assistant metadata is not a JSON object, using defaults")
        return TurnMetadata()

    trip_type = data.get("trip_type")
    try:
        return TurnMetadata(
            ready_to_plan=data.get("ready_to_plan") is True,
            suggested_questions=_string_list(data.get("suggested_questions"), MAX_SUGGESTED_QUESTIONS),
            form_options=_form_options(data.get("form_options")),
            agent_action=_agent_action(data.get("agent_action")),
            preferences_gathered=_string_list(data.get("preferences_gathered")),
            trip_type=trip_type if trip_type in ("roundtrip", "pointtopoint") else None,
        )
    except ValidationError as e:
        logger.warning(f"Assistant metadata failed validation, using defaults: {e}")
        return TurnMetadata()


def parse_assistant_reply(content: str) -> ParsedReply:
    text = content or ""

    metadata = TurnMetadata()
    match = _METADATA_BLOCK.search(text)
    if match:
        metadata = parse_metadata(match.group(1))
    else:
        logger.warning("Assistant reply has no metadata block")
    text = _METADATA_BLOCK.sub("", text)
    text = _DANGLING_METADATA.sub("", text)

    memory_update = None
    memory_match = _MEMORY_BLOCK.search(text)
    if memory_match:
        memory_update = memory_match.group(1).strip()[:MAX_MEMORY_CHARS] or None
    text = _MEMORY_BLOCK.sub("", text)

    return ParsedReply(text=text.strip(), metadata=metadata, memory_update=memory_update)
