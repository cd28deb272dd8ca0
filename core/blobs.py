# core/blobs.py
"""
Binary content handles.

A blob knows its name, declared content type and size up front, and yields its
bytes only when awaited. Collection only ever needs the metadata (quota checks
use ``size``); the bytes are read once, by the storage layer, at persist time.
"""
import asyncio
import mimetypes
import os
from pathlib import Path
from typing import Optional, Union


def guess_content_type(name: str) -> str:
    """Best-effort MIME type from a filename; empty string when unknown."""
    content_type, _ = mimetypes.guess_type(name)
    return content_type or ""


class Blob:
    """Base class for a named, sized chunk of binary content."""

    def __init__(self, name: str, size: int, content_type: Optional[str] = None, relative_path: str = ""):
        self.name = name
        self.size = size
        self.content_type = content_type if content_type is not None else guess_content_type(name)
        # Path hint supplied by a folder picker, "" when none is known
        self.relative_path = relative_path

    async def read(self) -> bytes:
        raise NotImplementedError

    def renamed(self, name: str) -> "Blob":
        """Returns a view of this blob under a different name, same content and type."""
        return NamedBlob(self, name)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, size={self.size}, content_type={self.content_type!r})"


class BytesBlob(Blob):
    """Blob held fully in memory (multipart uploads, tests)."""

    def __init__(self, data: bytes, name: str, content_type: Optional[str] = None, relative_path: str = ""):
        super().__init__(name=name, size=len(data), content_type=content_type, relative_path=relative_path)
        self._data = data

    async def read(self) -> bytes:
        return self._data


class LocalFileBlob(Blob):
    """Blob backed by a file on the local filesystem. Size is taken when the blob is created."""

    def __init__(self, path: Union[str, Path], name: Optional[str] = None, content_type: Optional[str] = None, relative_path: str = ""):
        self.path = Path(path)
        size = os.stat(self.path).st_size
        super().__init__(name=name or self.path.name, size=size, content_type=content_type, relative_path=relative_path)

    async def read(self) -> bytes:
        return await asyncio.to_thread(self.path.read_bytes)


class NamedBlob(Blob):
    """Renamed view over another blob."""

    def __init__(self, source: Blob, name: str):
        super().__init__(name=name, size=source.size, content_type=source.content_type, relative_path=source.relative_path)
        self.source = source

    async def read(self) -> bytes:
        return await self.source.read()
