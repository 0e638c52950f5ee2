"""Tests for the MCP server implementation."""
import json
from unittest.mock import MagicMock, patch

import pytest

from mention_graph.config import config
from mention_graph.exceptions import ErrorCode, StorageError, ValidationError
from mention_graph.models.schema import (
    BacklinkEntry,
    BacklinkTargetType,
    MentionKind,
    RecordKind,
    ReindexResult,
    TagCount,
)
from mention_graph.server.mcp_server import MentionGraphMcpServer


class TestMcpServer:
    """Tests for the MentionGraphMcpServer class."""

    def setup_method(self):
        """Set up test environment before each test."""
        self.registered_tools = {}
        self.mock_mcp = MagicMock()

        # Capture tool functions as the server registers them
        def mock_tool_decorator(*args, **kwargs):
            def tool_wrapper(func):
                self.registered_tools[kwargs.get("name")] = func
                return func
            return tool_wrapper
        self.mock_mcp.tool = mock_tool_decorator

        self.mock_service = MagicMock()
        self.mcp_patcher = patch(
            "mention_graph.server.mcp_server.FastMCP", return_value=self.mock_mcp
        )
        self.service_patcher = patch(
            "mention_graph.server.mcp_server.ReferenceService",
            return_value=self.mock_service,
        )
        self.mcp_patcher.start()
        self.service_patcher.start()

        self.server = MentionGraphMcpServer()

    def teardown_method(self):
        """Clean up after each test."""
        self.mcp_patcher.stop()
        self.service_patcher.stop()

    def test_tools_registered(self):
        assert set(self.registered_tools) == {
            "mg_content_committed",
            "mg_source_hard_deleted",
            "mg_get_backlinks",
            "mg_get_outgoing_references",
            "mg_get_tags",
            "mg_get_records_by_tag",
            "mg_list_references",
            "mg_get_date_references",
            "mg_find_dangling_references",
            "mg_rebuild_scope",
            "mg_reindex_record",
            "mg_status",
        }

    def test_content_committed(self):
        self.mock_service.on_content_committed.return_value = ReindexResult(
            source_id="a", created=2
        )
        result = json.loads(
            self.registered_tools["mg_content_committed"]("a", "user-1", "#x [[Y]]")
        )
        assert result["created"] == 2
        self.mock_service.on_content_committed.assert_called_once_with(
            "a", "user-1", "#x [[Y]]"
        )

    def test_content_too_long(self, monkeypatch):
        monkeypatch.setattr(config, "max_content_length", 5)
        result = json.loads(
            self.registered_tools["mg_content_committed"]("a", "user-1", "#toolong")
        )
        assert "exceeds maximum length" in result["error"]
        self.mock_service.on_content_committed.assert_not_called()

    def test_get_backlinks_for_date(self):
        self.mock_service.get_backlinks.return_value = [
            BacklinkEntry(
                source_id="a",
                kind=MentionKind.DATE,
                raw_text="2025-03-10",
                source_title="Meeting",
                source_kind=RecordKind.NOTE,
                owner_scope="user-1",
            )
        ]
        result = json.loads(
            self.registered_tools["mg_get_backlinks"]("date", "2025-03-10", "user-1")
        )
        assert result[0]["source_id"] == "a"
        assert result[0]["source_kind"] == "note"
        target = self.mock_service.get_backlinks.call_args[0][0]
        assert target.target_type == BacklinkTargetType.DATE
        assert target.owner_scope == "user-1"

    def test_get_backlinks_invalid_type(self):
        result = json.loads(self.registered_tools["mg_get_backlinks"]("person", "x"))
        assert "Invalid target type" in result["error"]
        self.mock_service.get_backlinks.assert_not_called()

    def test_records_by_tag_single_and_many(self):
        self.mock_service.get_records_by_tag.return_value = ["a"]
        self.mock_service.get_records_by_tags.return_value = ["a", "b"]

        assert json.loads(self.registered_tools["mg_get_records_by_tag"]("user-1", "#work")) == ["a"]
        assert json.loads(
            self.registered_tools["mg_get_records_by_tag"]("user-1", "work, idea", True)
        ) == ["a", "b"]
        self.mock_service.get_records_by_tags.assert_called_once_with(
            "user-1", ["work", "idea"], match_all=True
        )

    def test_get_tags(self):
        self.mock_service.get_tags.return_value = [TagCount(tag="work", count=2)]
        assert json.loads(self.registered_tools["mg_get_tags"]("user-1")) == [
            {"tag": "work", "count": 2}
        ]

    def test_list_references_bad_timestamp(self):
        result = json.loads(
            self.registered_tools["mg_list_references"]("user-1", since="yesterday")
        )
        assert result["code"] == "VALIDATION_FAILED"
        self.mock_service.list_references.assert_not_called()

    @pytest.mark.parametrize(
        "error, expected",
        [
            (ValidationError("bad limit", field="limit"), "bad limit"),
            (
                StorageError("Failed to write index entries", code=ErrorCode.STORAGE_WRITE_FAILED),
                "Failed to write index entries",
            ),
        ],
    )
    def test_domain_errors_reported(self, error, expected):
        self.mock_service.rebuild_scope.side_effect = error
        result = json.loads(self.registered_tools["mg_rebuild_scope"]("user-1"))
        assert result["error"] == expected
        assert result["code"] == error.code.name

    def test_unexpected_errors_hidden(self):
        self.mock_service.get_date_references.side_effect = RuntimeError("/secret/path")
        result = json.loads(self.registered_tools["mg_get_date_references"]("user-1"))
        assert "/secret/path" not in json.dumps(result)
        assert "ref" in result
