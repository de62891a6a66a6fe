from __future__ import annotations

from datetime import datetime, timezone

TRUNCATION_MARKER = "... (truncated)"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def truncate_text(value: str, max_bytes: int, *, marker: str = TRUNCATION_MARKER) -> str:
    """Cut `value` to at most `max_bytes` of UTF-8 without splitting a character."""
    encoded = value.encode("utf-8")
    if len(encoded) <= max_bytes:
        return value
    return encoded[:max_bytes].decode("utf-8", errors="ignore") + marker


def one_line(value: str, limit: int = 200) -> str:
    flattened = value.replace("\n", " ").strip()
    if len(flattened) > limit:
        return flattened[:limit] + "..."
    return flattened


def chunk_text(text: str, limit: int) -> list[str]:
    if len(text) <= limit:
        return [text]

    chunks: list[str] = []
    i = 0
    while i < len(text):
        j = min(i + limit, len(text))
        if j < len(text):
            nl = text.rfind("\n", i, j)
            if nl != -1 and nl > i:
                j = nl + 1
        chunks.append(text[i:j])
        i = j
    return chunks
