from __future__ import annotations

from pathlib import PurePosixPath
from typing import Optional

_LANGUAGE_TAGS = {
    "js": "javascript",
    "jsx": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "py": "python",
    "java": "java",
    "kt": "kotlin",
    "go": "go",
    "php": "php",
    "rb": "ruby",
    "rs": "rust",
    "cs": "csharp",
    "cpp": "cpp",
    "cc": "cpp",
    "hpp": "cpp",
    "c": "c",
    "h": "c",
    "swift": "swift",
    "scala": "scala",
    "sh": "bash",
    "bash": "bash",
    "yaml": "yaml",
    "yml": "yaml",
    "json": "json",
    "xml": "xml",
    "html": "html",
    "css": "css",
    "sql": "sql",
    "tf": "hcl",
}

FALLBACK_LANGUAGE_TAG = "text"


def language_tag_for_file(path: str) -> str:
    """Code-fence language for a file path; unknown or missing extensions map to "text"."""
    try:
        suffix = PurePosixPath(str(path or "").replace("\\", "/")).suffix
    except (TypeError, ValueError):
        return FALLBACK_LANGUAGE_TAG
    return _LANGUAGE_TAGS.get(suffix[1:].lower(), FALLBACK_LANGUAGE_TAG)


def humanize_duration_ms(duration_ms: Optional[int]) -> str:
    if duration_ms is None:
        return "n/a"
    try:
        ms = int(duration_ms)
    except (TypeError, ValueError):
        return "n/a"
    if ms < 0:
        return "n/a"
    if ms < 1000:
        return f"{ms}ms"

    seconds = ms / 1000.0
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes = int(seconds // 60)
    rem_s = int(round(seconds - minutes * 60))
    if rem_s == 60:
        minutes += 1
        rem_s = 0
    return f"{minutes}m {rem_s}s"


def truncate(text: str, max_len: int, suffix: str = "...") -> str:
    if not text:
        return ""
    if max_len <= 0:
        return ""
    if len(text) <= max_len:
        return text
    keep = max(max_len - len(suffix), 0)
    return text[:keep] + suffix


def clamp_body(body: str, max_len: int) -> str:
    """Cut a markdown body to a channel's size limit, closing any open code fence."""
    if len(body) <= max_len:
        return body
    notice = "\n\n...(truncated: report exceeds the size limit)"
    head = body[: max(max_len - len(notice) - 8, 0)]
    if head.count("```") % 2 == 1:
        head += "\n```"
    return head + notice


def fence(text: str, language: str = "") -> str:
    """Wrap text in a code fence that cannot be closed early by backticks in the text."""
    ticks = "```"
    while ticks in text:
        ticks += "`"
    return f"{ticks}{language}\n{text}\n{ticks}"
