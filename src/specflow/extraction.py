from __future__ import annotations

import json
import re
from collections.abc import Callable, Sequence

ExtractionStrategy = Callable[[str], "str | None"]

_FENCED_JSON_RE = re.compile(r"^\s*```(?:json)?\s*\n(?P<body>[\s\S]*?)\n?```\s*$")
_LABELED_BLOCK_RE = re.compile(
    r"```(?:tsx|typescript|ts|jsx|javascript|js)?\s*\n?filename:\s*(?P<filename>[^\n]+)\n(?P<code>[\s\S]*?)```"
)
_MODULE_KEYWORD_RE = re.compile(r"\b(?:export|import)\b")


def extract_file_array(content: str) -> str | None:
    """Parse ``[{"filename": ..., "content": ...}]``, optionally inside a json fence.

    Returns the first entry's content, preferring a ``.tsx`` file.
    """
    text = content.strip()
    fenced = _FENCED_JSON_RE.match(text)
    if fenced:
        text = fenced.group("body").strip()
    if not text.startswith("["):
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return None
    files = [
        item
        for item in payload
        if isinstance(item, dict) and isinstance(item.get("content"), str) and item["content"].strip()
    ]
    if not files:
        return None
    for item in files:
        if str(item.get("filename", "")).endswith(".tsx"):
            return item["content"]
    return files[0]["content"]


def extract_labeled_code_block(content: str) -> str | None:
    """Scan for fenced blocks labelled ``filename: X``; prefer one that imports or exports."""
    blocks = [match.group("code").strip() for match in _LABELED_BLOCK_RE.finditer(content)]
    blocks = [block for block in blocks if block]
    if not blocks:
        return None
    for block in blocks:
        if _MODULE_KEYWORD_RE.search(block):
            return block
    return blocks[0]


def extract_raw_text(content: str) -> str | None:
    text = content.strip()
    return text or None


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    extract_file_array,
    extract_labeled_code_block,
    extract_raw_text,
)


def extract_component_code(content: str, strategies: Sequence[ExtractionStrategy] = DEFAULT_STRATEGIES) -> str:
    """Run ``strategies`` in order; the first non-empty result wins.

    Raises:
        ValueError: If no strategy produced content.
    """
    for strategy in strategies:
        extracted = strategy(content)
        if extracted:
            return extracted
    raise ValueError("No component code could be extracted from generation output")
