# backend/knowledge_sync/core/storage/storage_path_service.py
"""
Storage Path Service.

Builds blob store keys for downloaded documents.

Storage Structure:
    {connection_id}/
    └── {document_id}/
        └── {attempt_id}/                 # fresh per download attempt
            └── {title}.{extension}
"""

import logging
import mimetypes
import re
import uuid
from typing import Optional

logger = logging.getLogger("knowledge_sync.storage_path")

# Maximum path component length
MAX_COMPONENT_LENGTH = 200

# Characters that may not appear in a key component
UNSAFE_CHARS = re.compile(r"[/\\\x00-\x1f]")

# Content types whose registered extension is not the usual one
_PREFERRED_EXTENSIONS = {
    "text/plain": "txt",
    "application/msword": "doc",
    "application/vnd.ms-excel": "xls",
    "application/vnd.ms-powerpoint": "ppt",
    "image/jpeg": "jpg",
}


def file_extension(filename: Optional[str]) -> str:
    """Lower-cased extension of ``filename`` without the dot, or ""."""
    if not filename or "." not in filename:
        return ""
    ext = filename.rsplit(".", 1)[1].strip().lower()
    if not ext or len(ext) > 10 or not ext.isalnum():
        return ""
    return ext


def extension_for_content_type(content_type: Optional[str]) -> str:
    if not content_type:
        return ""
    mime = content_type.split(";", 1)[0].strip().lower()
    if mime in _PREFERRED_EXTENSIONS:
        return _PREFERRED_EXTENSIONS[mime]
    guessed = mimetypes.guess_extension(mime)
    return guessed.lstrip(".") if guessed else ""


def infer_extension(title: Optional[str], content_type: Optional[str] = None) -> str:
    """Extension from the title, falling back to the response content type."""
    return file_extension(title) or extension_for_content_type(content_type)


def safe_component(text: Optional[str]) -> str:
    """Make ``text`` usable as a single key component."""
    if not text:
        return "_unnamed"
    text = UNSAFE_CHARS.sub("_", text).strip()
    if text in ("", ".", ".."):
        return "_unnamed"
    return text[:MAX_COMPONENT_LENGTH]


def document_object_key(
    connection_id: str,
    document_id: str,
    title: Optional[str],
    content_type: Optional[str] = None,
    attempt_id: Optional[str] = None,
) -> str:
    """
    Generate the blob key for one download attempt of a document.

    A fresh ``attempt_id`` per attempt means a retry never overwrites an
    object written by an earlier, partially failed attempt.

    Returns:
        Key like ``{connection_id}/{document_id}/{attempt_id}/{title}.{ext}``;
        the extension is appended only when the title does not carry it.
    """
    attempt_id = attempt_id or uuid.uuid4().hex
    name = safe_component(title)
    extension = infer_extension(title, content_type)
    if extension and file_extension(name) != extension:
        name = f"{name}.{extension}"
    return "/".join(
        (safe_component(connection_id), safe_component(document_id), attempt_id, name)
    )
