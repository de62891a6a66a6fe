from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "bmp", "webp"}
VIDEO_EXTENSIONS = {"mp4", "mov", "webm", "mkv", "avi", "m4v"}
ARTIFACT_TOKEN_RE = re.compile(
    r"(?:~|\.{1,2})?/?(?:[^\s'\"`<>()\[\]{}|;,=:]+/)*[^\s'\"`<>()\[\]{}|;,=:/]+\.(?:"
    + "|".join(sorted(IMAGE_EXTENSIONS | VIDEO_EXTENSIONS, key=len, reverse=True))
    + r")(?![A-Za-z0-9])",
    flags=re.IGNORECASE,
)
STRIP_CHARS = "`'\"()[]{}<>"
TRAILING_PUNCTUATION = ".,:;!?"


class ArtifactScanner:
    """Finds image/video files mentioned in command text or output.

    Only paths that exist as regular files at scan time are reported.
    """

    def __init__(self, *, max_artifacts: int = 10) -> None:
        self.max_artifacts = max_artifacts

    def kind(self, path: str) -> str:
        suffix = Path(path).suffix.lower().lstrip(".")
        return "video" if suffix in VIDEO_EXTENSIONS else "image"

    def scan(self, text: str, *, base_dir: str | Path | None = None) -> list[str]:
        found: list[str] = []
        seen: set[str] = set()
        if self._scan_into(text, base_dir=base_dir, found=found, seen=seen):
            self._log_limit()
        return found

    def scan_many(self, items: Iterable[tuple[str, str | Path | None]]) -> list[str]:
        """Scan (text, base_dir) pairs, de-duplicating across all of them."""
        found: list[str] = []
        seen: set[str] = set()
        for text, base_dir in items:
            if self._scan_into(text, base_dir=base_dir, found=found, seen=seen):
                self._log_limit()
                break
        return found

    def _log_limit(self) -> None:
        logger.info("Artifact limit reached max=%s; ignoring further paths", self.max_artifacts)

    def _scan_into(
        self,
        text: str,
        *,
        base_dir: str | Path | None,
        found: list[str],
        seen: set[str],
    ) -> bool:
        """Returns True once a further artifact shows up after the limit was reached."""
        if not text:
            return False
        for line in text.splitlines():
            for match in ARTIFACT_TOKEN_RE.finditer(line):
                candidate = self._resolve_candidate_path(match.group(0), base_dir=base_dir)
                if candidate is None:
                    continue
                display, key = candidate
                if key in seen:
                    continue
                if len(found) >= self.max_artifacts:
                    return True
                seen.add(key)
                found.append(display)
        return False

    def _resolve_candidate_path(self, token: str, *, base_dir: str | Path | None) -> tuple[str, str] | None:
        """Returns (path as mentioned, made absolute; symlink-resolved path used for de-duplication)."""
        cleaned = token.strip().strip(STRIP_CHARS).rstrip(TRAILING_PUNCTUATION)
        if not cleaned or "://" in cleaned:
            return None

        raw = Path(cleaned).expanduser()
        if raw.is_absolute():
            candidate = raw
        elif base_dir is not None:
            candidate = Path(base_dir).expanduser() / raw
        else:
            return None

        try:
            resolved = candidate.resolve()
            if not resolved.is_file():
                return None
        except OSError:
            return None
        return os.path.abspath(candidate), str(resolved)
