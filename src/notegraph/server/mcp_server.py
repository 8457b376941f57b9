"""MCP server exposing the Notegraph pipeline as tools."""

import atexit
import json
import logging
import uuid
from typing import Optional

from mcp.server.fastmcp import FastMCP

from notegraph.config import config
from notegraph.exceptions import NotegraphError
from notegraph.models.schema import Item
from notegraph.observability import metrics, timed_operation
from notegraph.services.item_service import ItemService

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1_000_000  # 1 MB


def _split_tags(tags: Optional[str]) -> Optional[list]:
    if tags is None:
        return None
    return [t.strip() for t in tags.split(",") if t.strip()]


def _format_item(item: Item) -> str:
    result = f"# {item.title or '(untitled)'}\n"
    result += f"ID: {item.id}\n"
    result += f"Kind: {item.kind.value}\n"
    result += f"Status: {item.status.value}\n"
    if item.url:
        result += f"URL: {item.url}\n"
    if item.summary:
        result += f"Summary: {item.summary}\n"
    if item.topics:
        result += f"Topics: {', '.join(item.topics)}\n"
    if item.tags:
        result += f"Tags: {', '.join(item.tags)}\n"
    if item.error_message:
        result += f"Error: {item.error_message}\n"
    result += f"Created: {item.created_at.isoformat()}\n"
    result += f"Updated: {item.updated_at.isoformat()}\n"
    if item.content:
        result += f"\n{item.content}\n"
    return result


class NotegraphMcpServer:
    """MCP server for Notegraph."""

    def __init__(self, service: Optional[ItemService] = None, engine=None, provider=None):
        """Initialize the MCP server.

        Args:
            service: Pre-built item service (tests inject one here).
            engine: Pre-configured SQLAlchemy engine for a service built here.
            provider: Analysis provider for a service built here. Defaults to
                the OpenAI provider.
        """
        self.mcp = FastMCP(config.server_name)
        if service is None:
            if provider is None:
                from notegraph.services.openai_provider import OpenAIAnalysisProvider

                provider = OpenAIAnalysisProvider()
            service = ItemService(provider=provider, engine=engine)
        self.service = service
        atexit.register(self._shutdown)
        self._register_tools()
        logger.info("Notegraph MCP server initialized")

    def _shutdown(self) -> None:
        """Clean up resources on server exit."""
        self.service.shutdown(wait=False)

    def format_error_response(self, error: Exception) -> str:
        """Format an error response in a consistent way."""
        error_id = str(uuid.uuid4())[:8]

        if isinstance(error, NotegraphError):
            logger.error(
                f"[{error.code.name}] [{error_id}]: {error.message}",
                extra={"error_details": error.details},
            )
            return f"Error: {error.message} (ref: {error_id})"
        elif isinstance(error, ValueError):
            logger.error(f"Validation error [{error_id}]: {str(error)}")
            return f"Error: Invalid input (ref: {error_id})"
        else:
            logger.error(f"Unexpected error [{error_id}]: {str(error)}", exc_info=True)
            return f"Error: An unexpected error occurred (ref: {error_id})"

    def _register_tools(self) -> None:
        """Register MCP tools."""

        @self.mcp.tool(name="ng_add_item")
        def ng_add_item(
            owner_id: str,
            content: str = "",
            kind: str = "text",
            url: Optional[str] = None,
            title: Optional[str] = None,
            tags: Optional[str] = None,
        ) -> str:
            """Save a note or a link and start enriching it in the background.
            Args:
                owner_id: Owner of the new item
                content: Note text (required for text items, optional for links)
                kind: "text" or "link"
                url: Absolute http(s) URL for link items
                title: Optional title; links default to the URL host name
                tags: Comma-separated list of tags (optional)
            """
            with timed_operation("ng_add_item", kind=kind) as op:
                try:
                    if len(content) > MAX_CONTENT_LENGTH:
                        raise ValueError(
                            f"Content exceeds maximum length of {MAX_CONTENT_LENGTH} characters"
                        )
                    item = self.service.create_item(
                        owner_id=owner_id,
                        content=content,
                        kind=kind,
                        url=url,
                        title=title,
                        tags=_split_tags(tags),
                    )
                    op["item_id"] = item.id
                    return f"Item created with ID: {item.id} (status: {item.status.value})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ng_get_item")
        def ng_get_item(item_id: str, owner_id: str) -> str:
            """Show an item with its enrichment and connections.
            Args:
                item_id: The ID of the item
                owner_id: Owner of the item
            """
            with timed_operation("ng_get_item", item_id=item_id) as op:
                try:
                    item = self.service.get_item(item_id, owner_id)
                    result = _format_item(item)
                    connected = self.service.list_connections(item_id, owner_id)
                    op["connections"] = len(connected)
                    if connected:
                        result += f"\n## Connections ({len(connected)})\n"
                        for connection, other in connected:
                            result += (
                                f"- {other.title or other.id} ({other.id}) "
                                f"[{connection.similarity:.2f}]: {connection.explanation}\n"
                            )
                    return result
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ng_update_item")
        def ng_update_item(
            item_id: str,
            owner_id: str,
            content: Optional[str] = None,
            title: Optional[str] = None,
            tags: Optional[str] = None,
            reprocess: bool = False,
        ) -> str:
            """Edit an item. Changing content re-runs enrichment.
            Args:
                item_id: The ID of the item
                owner_id: Owner of the item
                content: New content (optional)
                title: New title (optional)
                tags: Comma-separated list replacing the current tags (optional)
                reprocess: Re-run enrichment even if content is unchanged
            """
            with timed_operation("ng_update_item", item_id=item_id):
                try:
                    item = self.service.update_item(
                        item_id,
                        owner_id,
                        content=content,
                        title=title,
                        tags=_split_tags(tags),
                        reprocess=reprocess,
                    )
                    return f"Item {item.id} updated (status: {item.status.value})"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ng_delete_item")
        def ng_delete_item(item_id: str, owner_id: str) -> str:
            """Delete an item and its connections.
            Args:
                item_id: The ID of the item
                owner_id: Owner of the item
            """
            with timed_operation("ng_delete_item", item_id=item_id):
                try:
                    self.service.delete_item(item_id, owner_id)
                    return f"Item {item_id} deleted"
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ng_process_item")
        def ng_process_item(item_id: str, owner_id: str) -> str:
            """Run enrichment for one item now and return the outcome as JSON.
            Args:
                item_id: The ID of the item
                owner_id: Owner of the item
            """
            with timed_operation("ng_process_item", item_id=item_id):
                try:
                    result = self.service.process_item(item_id, owner_id)
                    return json.dumps(result.to_dict(), indent=2)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ng_process_pending")
        def ng_process_pending(owner_id: str) -> str:
            """Re-run enrichment for all of an owner's unfinished or failed items.
            Args:
                owner_id: Owner whose items are processed
            """
            with timed_operation("ng_process_pending", owner_id=owner_id):
                try:
                    result = self.service.process_pending(owner_id)
                    return json.dumps(result.to_dict(), indent=2)
                except Exception as e:
                    return self.format_error_response(e)

        @self.mcp.tool(name="ng_status")
        def ng_status(owner_id: str) -> str:
            """Item counts by status and server metrics.
            Args:
                owner_id: Owner whose items are counted
            """
            with timed_operation("ng_status"):
                try:
                    counts = self.service.status_counts(owner_id)
                    output = "# Notegraph Status\n\n"
                    output += f"**Total Items:** {sum(counts.values())}\n"
                    for status, count in counts.items():
                        output += f"  - {status}: {count}\n"

                    summary = metrics.get_summary()
                    output += "\n## Server Metrics\n"
                    output += f"**Uptime:** {summary['uptime_seconds']:.0f} seconds\n"
                    output += f"**Operations:** {summary['total_operations']}\n"
                    output += f"**Success Rate:** {summary['overall_success_rate']:.1%}\n"
                    output += f"**Errors:** {summary['total_errors']}\n"
                    return output
                except Exception as e:
                    return self.format_error_response(e)

    def run(self) -> None:
        """Run the MCP server."""
        self.mcp.run()
