"""
Tests for parsing the structured tail of assistant replies.

Validates:
1. Metadata and memory blocks are removed from the visible text
2. Metadata fields are read one by one with safe defaults
3. Malformed or missing metadata never fails the turn
"""

import json

from backend.conversation.models import AgentAction
from backend.conversation.turn_parser import parse_assistant_reply, parse_metadata


class TestParseAssistantReply:
    """Test splitting a reply into text, metadata and memory."""

    def test_metadata_stripped(self):
        reply = parse_assistant_reply(
            'How long will you stay?\n<metadata>{"ready_to_plan": false, "suggested_questions": ["3 days"]}</metadata>'
        )
        assert reply.text == "How long will you stay?"
        assert reply.metadata.ready_to_plan is False
        assert reply.metadata.suggested_questions == ["3 days"]

    def test_memory_update_extracted(self):
        reply = parse_assistant_reply(
            "Noted!\n<memory_update>Vegetarian, prefers trains</memory_update>\n<metadata>{}</metadata>"
        )
        assert reply.text == "Noted!"
        assert reply.memory_update == "Vegetarian, prefers trains"

    def test_memory_truncated(self):
        reply = parse_assistant_reply(f"Ok <memory_update>{'x' * 500}</memory_update>")
        assert len(reply.memory_update) == 200

    def test_missing_metadata_uses_defaults(self):
        reply = parse_assistant_reply("Just text.")
        assert reply.text == "Just text."
        assert reply.metadata.ready_to_plan is False
        assert reply.metadata.suggested_questions == []

    def test_truncated_metadata_removed(self):
        """A reply cut off inside the metadata block must not leak the fragment."""
        reply = parse_assistant_reply('Great choice!\n<metadata>{"ready_to_pl')
        assert reply.text == "Great choice!"
        assert reply.metadata.ready_to_plan is False


class TestParseMetadata:
    """Test field-by-field metadata validation."""

    def test_full_metadata(self):
        meta = parse_metadata(json.dumps({
            "ready_to_plan": True,
            "suggested_questions": ["a", "b", "c", "d", "e", "f"],
            "form_options": [{"label": "Hiking"}, "Museums", {"label": ""}],
            "agent_action": "packing_list",
            "preferences_gathered": ["pace"],
            "trip_type": "roundtrip",
        }))
        assert meta.ready_to_plan is True
        assert meta.suggested_questions == ["a", "b", "c", "d"]
        assert [o.label for o in meta.form_options] == ["Hiking", "Museums"]
        assert meta.agent_action == AgentAction.PACKING_LIST
        assert meta.preferences_gathered == ["pace"]
        assert meta.trip_type == "roundtrip"

    def test_ready_to_plan_must_be_true_literal(self):
        assert parse_metadata('{"ready_to_plan": "yes"}').ready_to_plan is False

    def test_unknown_agent_action_ignored(self):
        assert parse_metadata('{"agent_action": "book_hotel"}').agent_action is None

    def test_unknown_trip_type_ignored(self):
        assert parse_metadata('{"trip_type": "cruise"}').trip_type is None

    def test_wrong_types_ignored(self):
        meta = parse_metadata('{"suggested_questions": "not a list", "form_options": 7}')
        assert meta.suggested_questions == []
        assert meta.form_options == []

    def test_invalid_json(self):
        assert parse_metadata("{ready_to_plan: true").ready_to_plan is False

    def test_not_an_object(self):
        assert parse_metadata("[true]").ready_to_plan is False
