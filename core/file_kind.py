# core/file_kind.py
from typing import List, Optional

CODE_EXTENSIONS = {"js", "ts", "jsx", "tsx", "py", "java", "cpp", "c"}
DOCUMENT_EXTENSIONS = {"txt", "md", "doc", "docx"}
DEFAULT_KIND = "other"


def file_extension(filename: str) -> str:
    """Lower-cased extension of the last path segment, "" when the name has no dot."""
    base = (filename or "").rsplit("/", 1)[-1]
    if "." not in base:
        return ""
    return base.rsplit(".", 1)[-1].lower()


def infer_kind(mime_type: Optional[str], filename: str) -> str:
    """Maps a MIME type / filename pair to a coarse category. Never fails."""
    mime_type = (mime_type or "").lower()
    ext = file_extension(filename)
    if mime_type.startswith("image/"): return "image"
    if mime_type.startswith("video/"): return "video"
    if mime_type.startswith("audio/"): return "audio"
    if ext == "pdf" or "pdf" in mime_type: return "pdf"
    if ext in CODE_EXTENSIONS: return "code"
    if ext in DOCUMENT_EXTENSIONS: return "document"
    return DEFAULT_KIND


def auto_tags(kind: str, ext: str) -> List[str]:
    """Tags attached to every upload: the kind first, then the extension when there is one."""
    tags = [kind]
    if ext:
        tags.append(ext)
    return tags
