"""Unit tests for message parsing, migration and validation."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from agentctx.errors import SchemaError
from agentctx.errors import VersionError
from agentctx.messages import create_message
from agentctx.messages import default_registry
from agentctx.messages import MessageProcessor
from agentctx.messages import MigrationRegistry
from agentctx.messages import MultipartContent
from agentctx.messages import normalize_version
from agentctx.messages import Role
from agentctx.messages import serialize
from agentctx.messages import StructuredContent
from agentctx.messages import TextContent
from agentctx.observability import latency_metrics_snapshot


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _v2_payload(**overrides) -> dict:
    payload = {
        "id": "msg_v2",
        "version": "2.0.0",
        "role": "assistant",
        "content": {"type": "text", "text": "Deploy finished."},
        "timestamp": "2024-05-01T12:00:00+00:00",
        "metadata": {
            "model": "gpt-4",
            "processing_time_ms": 120,
            "confidence_score": 0.8,
            "tokens": 42,
            "channel": "ops",
        },
        "context": {"conversation_id": "conv_1", "session_id": "s1"},
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Canonical messages
# ---------------------------------------------------------------------------


class TestCanonicalMessage:
    def test_create_message_assigns_id_and_timestamp(self):
        msg = create_message("user", "hello", session_id="s1")
        assert msg.id.startswith("msg_")
        assert msg.created_at.tzinfo is not None
        assert msg.context.conversation_id.startswith("conv_")
        assert msg.context.session_id == "s1"

    def test_bare_string_becomes_text_content(self):
        msg = create_message(Role.user, "hi")
        assert isinstance(msg.content, TextContent)
        assert msg.text() == "hi"

    def test_dict_becomes_structured_content(self):
        msg = create_message(Role.tool, {"status": "ok"})
        assert isinstance(msg.content, StructuredContent)
        assert msg.text() == '{"status": "ok"}'

    def test_list_becomes_multipart_content(self):
        msg = create_message(Role.user, ["first", "second"])
        assert isinstance(msg.content, MultipartContent)
        assert msg.text() == "first\nsecond"

    def test_identity_fields_are_immutable(self):
        msg = create_message(Role.user, "hi")
        with pytest.raises(ValidationError):
            msg.role = Role.assistant  # type: ignore[misc]
        with pytest.raises(ValidationError):
            msg.content = TextContent(text="changed")  # type: ignore[misc]

    def test_attach_metadata_returns_copy(self):
        msg = create_message(Role.assistant, "done")
        updated = msg.attach_metadata(latency_ms=12.5, trace_id="t1")
        assert updated.metadata.latency_ms == 12.5
        assert updated.metadata.extra == {"trace_id": "t1"}
        assert msg.metadata.latency_ms is None
        assert updated.id == msg.id

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            create_message(Role.user, "hi", mood="happy")


# ---------------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------------


class TestVersions:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("2", "2.0.0"), ("2.0", "2.0.0"), (3, "3.0.0"), ("v1.0.0", "1.0.0")],
    )
    def test_normalize_version(self, raw, expected):
        assert normalize_version(raw) == expected

    def test_garbage_version_rejected(self):
        with pytest.raises(VersionError):
            normalize_version("latest")

    def test_default_chain(self):
        assert default_registry().versions() == ["1.0.0", "2.0.0", "3.0.0"]

    def test_registering_without_step_rejected(self):
        registry = MigrationRegistry()
        with pytest.raises(ValueError, match="upgrade step"):
            registry.register("1.0.0", required=("role",))


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class TestMessageProcessor:
    def test_round_trip_of_canonical_message(self):
        processor = MessageProcessor()
        original = create_message(
            Role.assistant,
            {"answer": 42},
            session_id="s1",
            agent_id="agent-1",
        ).attach_metadata(model="gpt-4", latency_ms=5.0)
        assert processor.process(serialize(original)) == original

    def test_round_trip_from_json_text(self):
        processor = MessageProcessor()
        original = create_message(Role.user, "hello")
        assert processor.process(json.dumps(serialize(original))) == original

    def test_v1_message_migrates_with_embedded_metadata(self):
        processor = MessageProcessor()
        raw = {
            "role": "user",
            "content": 'Where is the report? [METADATA:{"model": "legacy-bot"}]',
            "agentName": "helper",
        }
        msg = processor.process(raw, version="1.0.0")
        assert msg.version == "3.0.0"
        assert msg.text() == "Where is the report?"
        assert msg.metadata.model == "legacy-bot"
        assert msg.metadata.extra["migrated_from"] == "1.0.0"
        assert msg.metadata.extra["original_agent_name"] == "helper"

    def test_unversioned_payload_treated_as_v1(self):
        msg = MessageProcessor().process({"role": "user", "content": "plain"})
        assert msg.text() == "plain"
        assert msg.metadata.extra["migrated_from"] == "1.0.0"

    def test_v2_metadata_mapping(self):
        msg = MessageProcessor().process(_v2_payload())
        assert msg.id == "msg_v2"
        assert msg.metadata.model == "gpt-4"
        assert msg.metadata.latency_ms == 120
        assert msg.metadata.confidence == 0.8
        assert msg.metadata.token_counts.total == 42
        assert msg.metadata.extra == {"channel": "ops"}
        assert msg.created_at.year == 2024
        assert msg.context.session_id == "s1"

    def test_v2_tool_result_becomes_structured(self):
        payload = _v2_payload(
            role="tool",
            content={"type": "tool_result", "tool_name": "search", "result": [1, 2]},
        )
        msg = MessageProcessor().process(payload)
        assert isinstance(msg.content, StructuredContent)
        assert msg.content.schema_name == "tool_result"
        assert msg.content.data == {"tool_name": "search", "result": [1, 2]}

    def test_missing_required_field_is_schema_error(self):
        with pytest.raises(SchemaError) as exc_info:
            MessageProcessor().process({"role": "user"}, version="1.0.0")
        assert exc_info.value.field == "content"

    def test_v2_missing_conversation_is_schema_error(self):
        payload = _v2_payload(context={})
        with pytest.raises(SchemaError):
            MessageProcessor().process(payload)

    def test_invalid_role_is_schema_error(self):
        payload = _v2_payload(role="narrator")
        with pytest.raises(SchemaError):
            MessageProcessor().process(payload)

    def test_unknown_version_is_version_error(self):
        with pytest.raises(VersionError):
            MessageProcessor().process({"role": "user", "content": "x"}, version="9.0.0")

    def test_non_object_payload_rejected(self):
        with pytest.raises(SchemaError):
            MessageProcessor().process("[1, 2, 3]")

    def test_invalid_json_rejected(self):
        with pytest.raises(SchemaError):
            MessageProcessor().process(b"{not json")

    def test_non_utf8_bytes_rejected(self):
        raw = json.dumps(_v2_payload()).encode("utf-8").replace(b"Deploy", b"D\xe9ploy")
        with pytest.raises(SchemaError, match="UTF-8"):
            MessageProcessor().process(raw)

    def test_utf8_bytes_accepted(self):
        payload = _v2_payload(content={"type": "text", "text": "Déployé."})
        raw = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        message = MessageProcessor().process(raw)
        assert message.content.text == "Déployé."

    def test_latency_recorded_for_rejections(self):
        with pytest.raises(SchemaError):
            MessageProcessor().process({"role": "user"})
        metrics = latency_metrics_snapshot()["messages.process"]
        assert metrics["error_count"] == 1
