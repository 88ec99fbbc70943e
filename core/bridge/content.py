"""
Message content parsing

Decodes the JSON `content` string of a platform message into plain text plus
at most one image reference. Unparseable content is treated as empty.

Rich posts may be wrapped in a locale key ({"zh_cn": {...}}) or bare
({"title": ..., "content": [[run, ...], ...]}). Only the first embedded image
is kept; later images in the same post are ignored.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from core.bridge.types import MessageKind

IMAGE_RECEIVED_TEXT = "[image received]"
POST_IMAGE_MARKER = "[image]"

_POST_LOCALES = ("zh_cn", "zh_tw", "en_us")
_MENTION_TOKEN = re.compile(r"@_user_\d+\s*")


@dataclass
class ParsedContent:
    """Text plus the single image reference to fetch, if any."""
    text: str = ""
    image_key: Optional[str] = None
    ignored_image_keys: List[str] = field(default_factory=list)


def _load_json(raw: str) -> Optional[Any]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


def strip_mention_tokens(text: str) -> str:
    """Remove '@_user_N' placeholders the platform puts in for mentions."""
    return _MENTION_TOKEN.sub("", text).strip()


def parse_text(raw: str) -> ParsedContent:
    data = _load_json(raw)
    if not isinstance(data, dict):
        return ParsedContent()
    return ParsedContent(text=str(data.get("text") or "").strip())


def parse_image(raw: str) -> ParsedContent:
    data = _load_json(raw)
    if not isinstance(data, dict):
        return ParsedContent()
    image_key = data.get("image_key")
    if not image_key:
        return ParsedContent()
    return ParsedContent(text=IMAGE_RECEIVED_TEXT, image_key=str(image_key))


class _PostWalker:
    """Accumulates image keys while rendering post runs to text."""

    def __init__(self) -> None:
        self.image_keys: List[str] = []

    def render(self, node: Any) -> str:
        if not node:
            return ""
        if isinstance(node, str):
            return node
        if isinstance(node, list):
            return "".join(self.render(child) for child in node)
        if not isinstance(node, dict):
            return ""

        tag = node.get("tag")
        if tag == "text":
            return node.get("text") or ""
        if tag == "a":
            return node.get("text") or node.get("href") or ""
        if tag == "at":
            return ""
        if tag == "img":
            if node.get("image_key"):
                self.image_keys.append(node["image_key"])
            return POST_IMAGE_MARKER
        if isinstance(node.get("content"), list):
            return self.render_lines(node["content"])
        return ""

    def render_lines(self, lines: List[Any]) -> str:
        return "\n".join(
            self.render(line) if isinstance(line, list) else ""
            for line in lines
        )


def parse_post(raw: str) -> ParsedContent:
    data = _load_json(raw)
    if not isinstance(data, dict):
        return ParsedContent()

    post = next((data[k] for k in _POST_LOCALES if isinstance(data.get(k), dict)), data)
    walker = _PostWalker()

    title = post.get("title") or ""
    lines = post.get("content") or []
    body = walker.render_lines(lines) if isinstance(lines, list) else ""
    text = (f"{title}\n" if title else "") + body

    keys = walker.image_keys
    return ParsedContent(
        text=text.strip(),
        image_key=keys[0] if keys else None,
        ignored_image_keys=keys[1:],
    )


def parse_content(kind: MessageKind, raw: str) -> ParsedContent:
    """
    Dispatch on message kind.

    Args:
        kind: normalized message kind
        raw: platform content JSON string

    Returns:
        ParsedContent (empty for unsupported kinds or malformed JSON)
    """
    if kind is MessageKind.TEXT:
        return parse_text(raw)
    if kind is MessageKind.IMAGE:
        return parse_image(raw)
    if kind is MessageKind.RICH_POST:
        return parse_post(raw)
    return ParsedContent()
