"""Helpers for constructing MCP-native tool results and content blocks."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping

import orjson

ContentItem = Mapping[str, Any]
StructuredContent = Mapping[str, Any]


def text_item(text: str) -> Dict[str, str]:
    return {"type": "text", "text": text}


def resource_item(uri: str, text: str, mime_type: str = "text/plain") -> Dict[str, Any]:
    return {
        "type": "resource",
        "resource": {"uri": uri, "mimeType": mime_type, "text": text},
    }


def json_item(structured: Mapping[str, Any], uri: str = "resource://structured.json") -> Dict[str, Any]:
    """Embed ``structured`` as an ``application/json`` resource block.

    Keys are sorted so identical payloads always serialise identically.
    """

    text = orjson.dumps(dict(structured), option=orjson.OPT_SORT_KEYS).decode("utf-8")
    return resource_item(uri, text, mime_type="application/json")


def mcp_result(
    *,
    content: Iterable[ContentItem],
    structured: StructuredContent | None = None,
    is_error: bool = False,
) -> dict[str, Any]:
    """Assemble a CallToolResult-shaped dict.

    ``content`` may be any iterable of blocks; each must carry a ``type``.
    The first block is what clients show, so tools put their Markdown (or, in
    JSON mode, the embedded payload) there. ``structured`` is copied into
    ``structuredContent`` untouched.
    """

    blocks = [dict(item) for item in content]
    if not blocks:
        raise ValueError("mcp_result requires at least one content item")
    for block in blocks:
        if "type" not in block:
            raise ValueError(f"content block without a type: {sorted(block)}")

    result: dict[str, Any] = {"content": blocks, "isError": bool(is_error)}
    if structured is not None:
        result["structuredContent"] = dict(structured)
    return result


__all__ = ["json_item", "mcp_result", "resource_item", "text_item"]
