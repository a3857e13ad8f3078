"""Filesystem naming helpers for the download directory layout."""

import os
import re
from datetime import datetime
from typing import Optional
from urllib.parse import unquote, urlparse

MAX_FILENAME_LENGTH = 200

# Content types seen in podcast enclosures, mapped to file extensions
MIME_TO_EXT = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/x-mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/m4a": ".m4a",
    "audio/aac": ".aac",
    "audio/x-aac": ".aac",
    "audio/flac": ".flac",
    "audio/x-flac": ".flac",
    "audio/ogg": ".oga",
    "audio/vorbis": ".oga",
    "application/ogg": ".ogg",
    "audio/opus": ".opus",
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/webm": ".weba",
    "audio/3gpp": ".3gp",
    "video/3gpp": ".3gp",
    "video/mp4": ".mp4",
    "video/x-m4v": ".m4v",
    "video/quicktime": ".mov",
    "video/webm": ".webm",
}


def sanitize_filename(name: Optional[str], fallback: str = "episode") -> str:
    """Sanitize a string for use as a file or directory name.

    Args:
        name: Original name
        fallback: Returned when nothing usable is left

    Returns:
        Sanitized name safe for the filesystem
    """
    if not name:
        return fallback
    # Remove or replace invalid characters
    safe = re.sub(r'[<>:"/\\|?*\x00-\x1f]', "", name)
    # Replace multiple spaces/underscores with single
    safe = re.sub(r"[\s_]+", "_", safe)
    # Remove leading/trailing whitespace and dots
    safe = safe.strip(" ._")
    return safe[:MAX_FILENAME_LENGTH] or fallback


def extension_for(content_type: Optional[str], url: Optional[str] = None) -> str:
    """Pick a file extension from the content type, then the URL, then mp3."""
    if content_type:
        mime = content_type.split(";")[0].strip().lower()
        if mime in MIME_TO_EXT:
            return MIME_TO_EXT[mime]

    if url:
        url_filename = unquote(os.path.basename(urlparse(url).path))
        _, ext = os.path.splitext(url_filename)
        if ext and 1 < len(ext) <= 6 and ext[1:].isalnum():
            return ext.lower()

    return ".mp3"


def episode_filename(
    title: Optional[str],
    published_date: Optional[datetime],
    extension: str,
) -> str:
    """Build `<title>_<YYYYmmdd_HHMMSS>.<ext>` for an episode download."""
    parts = [sanitize_filename(title)]
    if published_date:
        parts.append(published_date.strftime("%Y%m%d_%H%M%S"))

    stem = "_".join(parts)
    if len(stem) + len(extension) > MAX_FILENAME_LENGTH:
        stem = stem[: MAX_FILENAME_LENGTH - len(extension)]
    return stem + extension
