"""MCP server exposing the mention graph engine."""

import atexit
import datetime
import json
import logging
import uuid
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from mention_graph.config import config
from mention_graph.exceptions import MentionGraphError, ValidationError
from mention_graph.models.schema import BacklinkTarget, BacklinkTargetType
from mention_graph.observability import metrics, timed_operation
from mention_graph.services.reference_service import ReferenceService

logger = logging.getLogger(__name__)


def _to_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, default=str)


def _dump(models) -> list:
    return [m.model_dump(mode="json") for m in models]


class MentionGraphMcpServer:
    """MCP server for the mention graph engine.

    Tools return JSON documents. Errors come back as a JSON object with an
    ``error`` key rendered by format_error_response().
    """

    def __init__(self, engine=None):
        """Initialize the MCP server.

        Args:
            engine: Pre-configured SQLAlchemy engine shared by every
                    repository. When None, one is created from config.
        """
        self.mcp = FastMCP(config.server_name)
        self.service = ReferenceService(engine=engine)
        atexit.register(self._shutdown)
        self._register_tools()
        logger.info("Mention graph MCP server initialized")

    def _shutdown(self) -> None:
        """Clean up resources on server exit."""
        self.service.shutdown()

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way.

        Domain errors carry their message and code. Anything else is logged
        in full and reported by reference only, so internals never leak.
        """
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, MentionGraphError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return _to_json({"error": error.message, "code": error.code.name})
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return _to_json({"error": "Invalid input", "ref": error_id})
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return _to_json({"error": "An unexpected error occurred", "ref": error_id})

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="mg_content_committed")
        def mg_content_committed(source_id: str, owner_scope: str, text_content: str) -> str:
            """Reindex a record after its content write committed.
            Args:
                source_id: ID of the written record
                owner_scope: Scope (owner/workspace) of the record
                text_content: The committed content
            """
            with timed_operation("mg_content_committed", source_id=source_id) as op:
                try:
                    if len(text_content) > config.max_content_length:
                        raise ValidationError(
                            f"Content exceeds maximum length of "
                            f"{config.max_content_length} characters",
                            field="text_content",
                        )
                    result = self.service.on_content_committed(
                        source_id, owner_scope, text_content
                    )
                    op["superseded"] = result.superseded
                    return _to_json(result.model_dump())
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="mg_source_hard_deleted")
        def mg_source_hard_deleted(source_id: str) -> str:
            """Purge the index entries of a permanently deleted record.
            Args:
                source_id: ID of the deleted record
            """
            with timed_operation("mg_source_hard_deleted", source_id=source_id):
                try:
                    removed = self.service.on_source_hard_deleted(source_id)
                    return _to_json({"source_id": source_id, "removed": removed})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="mg_get_backlinks")
        def mg_get_backlinks(
            target_type: str, key: str, owner_scope: Optional[str] = None
        ) -> str:
            """List the records that mention a target.
            Args:
                target_type: "record", "date" or "collection"
                key: Record ID, YYYY-MM-DD date or collection slug
                owner_scope: Scope to search (required for date and collection)
            """
            with timed_operation("mg_get_backlinks", target_type=target_type) as op:
                try:
                    try:
                        kind = BacklinkTargetType(target_type.lower())
                    except ValueError:
                        return _to_json({
                            "error": f"Invalid target type: {target_type}. Valid types are: "
                            f"{', '.join(t.value for t in BacklinkTargetType)}"
                        })
                    if kind == BacklinkTargetType.RECORD:
                        target = BacklinkTarget.record(key)
                    elif kind == BacklinkTargetType.DATE:
                        target = BacklinkTarget.date(key, owner_scope)
                    else:
                        target = BacklinkTarget.collection(key, owner_scope)
                    backlinks = self.service.get_backlinks(target)
                    op["result_count"] = len(backlinks)
                    return _to_json(_dump(backlinks))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="mg_get_outgoing_references")
        def mg_get_outgoing_references(source_id: str) -> str:
            """List a record's own mentions with their target status.
            Args:
                source_id: ID of the record
            """
            with timed_operation("mg_get_outgoing_references", source_id=source_id):
                try:
                    return _to_json(_dump(self.service.get_outgoing_references(source_id)))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="mg_get_tags")
        def mg_get_tags(owner_scope: str) -> str:
            """List tags in a scope with the number of records using each.
            Args:
                owner_scope: Scope to list
            """
            with timed_operation("mg_get_tags", owner_scope=owner_scope):
                try:
                    return _to_json(_dump(self.service.get_tags(owner_scope)))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="mg_get_records_by_tag")
        def mg_get_records_by_tag(
            owner_scope: str, tags: str, match_all: bool = False
        ) -> str:
            """List IDs of records carrying one or more tags.
            Args:
                owner_scope: Scope to search
                tags: Tag, or comma-separated tags (a leading # is optional)
                match_all: With several tags, require every one of them
            """
            with timed_operation("mg_get_records_by_tag", owner_scope=owner_scope):
                try:
                    tag_list = [t.strip() for t in tags.split(",") if t.strip()]
                    if len(tag_list) == 1:
                        ids = self.service.get_records_by_tag(owner_scope, tag_list[0])
                    else:
                        ids = self.service.get_records_by_tags(
                            owner_scope, tag_list, match_all=match_all
                        )
                    return _to_json(ids)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="mg_list_references")
        def mg_list_references(
            owner_scope: str,
            source_id: Optional[str] = None,
            kind: Optional[str] = None,
            target_key: Optional[str] = None,
            since: Optional[str] = None,
            include_dangling: bool = True,
            limit: int = 100,
            offset: int = 0,
        ) -> str:
            """List index entries in a scope, newest first.
            Args:
                owner_scope: Scope to list
                source_id: Only entries of this record
                kind: Only this mention kind (tag, note, card, date, collection)
                target_key: Only entries with this normalized target key
                since: Only entries created after this ISO 8601 timestamp
                include_dangling: Include entries whose target never resolved
                limit: Page size, 1 to 500 (default: 100)
                offset: Entries to skip (default: 0)
            """
            with timed_operation("mg_list_references", owner_scope=owner_scope) as op:
                try:
                    since_dt = None
                    if since:
                        try:
                            since_dt = datetime.datetime.fromisoformat(since)
                        except ValueError:
                            raise ValidationError(
                                f"Invalid timestamp '{since}'", field="since", value=since
                            )
                    entries = self.service.list_references(
                        owner_scope,
                        source_id=source_id,
                        kind=kind,
                        target_key=target_key,
                        since=since_dt,
                        include_dangling=include_dangling,
                        limit=limit,
                        offset=offset,
                    )
                    op["result_count"] = len(entries)
                    return _to_json(_dump(entries))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="mg_get_date_references")
        def mg_get_date_references(owner_scope: str) -> str:
            """Map each referenced date in a scope to its number of records.
            Args:
                owner_scope: Scope to summarize
            """
            with timed_operation("mg_get_date_references", owner_scope=owner_scope):
                try:
                    return _to_json(self.service.get_date_references(owner_scope))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="mg_find_dangling_references")
        def mg_find_dangling_references(owner_scope: str) -> str:
            """List mentions in a scope whose target is missing or deleted.
            Args:
                owner_scope: Scope to audit
            """
            with timed_operation("mg_find_dangling_references", owner_scope=owner_scope):
                try:
                    return _to_json(_dump(self.service.find_dangling_references(owner_scope)))
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="mg_rebuild_scope")
        def mg_rebuild_scope(owner_scope: str) -> str:
            """Reindex every live record of a scope from its stored content.
            Args:
                owner_scope: Scope to rebuild
            """
            with timed_operation("mg_rebuild_scope", owner_scope=owner_scope):
                try:
                    count = self.service.rebuild_scope(owner_scope)
                    return _to_json({"owner_scope": owner_scope, "reindexed": count})
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="mg_reindex_record")
        def mg_reindex_record(source_id: str) -> str:
            """Reindex one record from its stored content.
            Args:
                source_id: ID of the record
            """
            with timed_operation("mg_reindex_record", source_id=source_id):
                try:
                    return _to_json(self.service.reindex_record(source_id).model_dump())
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="mg_status")
        def mg_status() -> str:
            """Report server version and operation metrics."""
            try:
                return _to_json({
                    "server": config.server_name,
                    "version": config.server_version,
                    "metrics": metrics.get_summary(),
                })
            except Exception as e:
                return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
