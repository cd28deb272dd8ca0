# services/upload_service/app/traversal.py
"""
Flattens dropped files and folders into an ordered list of IncomingItems.

The host hands over entries: files whose content must be resolved and
directories whose children come back from a reader in batches, an empty batch
meaning the directory is exhausted. The walk is depth-first, children in the
order the host returns them, relative paths joined with "/".
"""
import asyncio
import os
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from core.blobs import Blob, LocalFileBlob
from core.config import settings, logger as core_logger
from core.models import IncomingItem

logger = core_logger.getChild("UploadService").getChild("Traversal")

PATH_SEPARATOR = "/"


class TraversalError(Exception):
    """A file or directory inside a dropped tree could not be read."""


# --- Host entry interface ---

class Entry:
    """Host handle for a file or directory, before content/children are resolved."""
    name: str = ""
    is_file: bool = False
    is_directory: bool = False

class FileEntry(Entry):
    is_file = True

    async def file(self) -> Blob:
        raise NotImplementedError

class DirectoryReader:
    async def read_entries(self) -> List[Entry]:
        """Next batch of children; an empty list once the directory is exhausted."""
        raise NotImplementedError

class DirectoryEntry(Entry):
    is_directory = True

    def create_reader(self) -> DirectoryReader:
        raise NotImplementedError


class DropPayload:
    """
    What a drop (or picker) delivers.

    ``entries`` is populated when the host exposes folder semantics; otherwise
    only ``files`` is, each blob optionally carrying a relative-path hint.
    """

    def __init__(self, entries: Optional[Sequence[Entry]] = None, files: Optional[Sequence[Blob]] = None):
        self.entries = list(entries or [])
        self.files = list(files or [])


def join_path(prefix: str, name: str) -> str:
    return f"{prefix}{PATH_SEPARATOR}{name}" if prefix else name


# --- Traversal ---

async def read_all_children(directory: DirectoryEntry, path: str) -> List[Entry]:
    """Keeps reading batches until the reader returns an empty one. Partial results survive a failing read."""
    children: List[Entry] = []
    try:
        reader = directory.create_reader()
        while True:
            batch = await reader.read_entries()
            if not batch:
                break
            children.extend(batch)
    except TraversalError as e:
        logger.warning(f"Skipping rest of directory '{path}' after {len(children)} entries: {e}")
    except Exception as e:
        logger.warning(f"Skipping rest of directory '{path}' after {len(children)} entries: {e}", exc_info=True)
    return children


async def collect(payload: DropPayload) -> List[IncomingItem]:
    """
    Resolves a drop payload into queue items.

    Every leaf is awaited before this returns, so the result is never a
    partial view of the tree. Entries that fail to read are logged and skipped.
    Duplicate paths are kept. When entries are present, flat files are ignored.
    """
    if not payload.entries:
        items = [IncomingItem(blob=blob, relative_path=blob.relative_path or "") for blob in payload.files]
        logger.info(f"Collected {len(items)} flat files.")
        return items

    if payload.files:
        # Entries already describe the whole drop; hosts that send both duplicate them as flat files
        logger.warning(f"Ignoring {len(payload.files)} flat files sent alongside {len(payload.entries)} dropped entries.")

    collected: List[IncomingItem] = []
    skipped = 0
    # Explicit work-list; popped from the end, so pushed in reverse to keep host order
    stack: List[Tuple[Entry, str]] = [(entry, "") for entry in reversed(payload.entries)]

    while stack:
        entry, prefix = stack.pop()
        path = join_path(prefix, entry.name)

        if entry.is_file:
            try:
                blob = await entry.file()
            except Exception as e:
                logger.warning(f"Skipping unreadable file '{path}': {e}", exc_info=not isinstance(e, (TraversalError, OSError)))
                skipped += 1
                continue
            collected.append(IncomingItem(blob=blob, relative_path=path))
        elif entry.is_directory:
            children = await read_all_children(entry, path)
            logger.debug(f"Directory '{path}' has {len(children)} entries.")
            stack.extend((child, path) for child in reversed(children))
        else:
            logger.debug(f"Ignoring entry '{path}' that is neither file nor directory.")

    logger.info(f"Collected {len(collected)} files from {len(payload.entries)} dropped entries ({skipped} skipped).")
    return collected


# --- Local filesystem host ---

class LocalFileEntry(FileEntry):
    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.name = self.path.name

    async def file(self) -> Blob:
        return await asyncio.to_thread(LocalFileBlob, self.path)

class LocalDirectoryReader(DirectoryReader):
    """Pages through os.scandir, at most batch_size entries per read."""

    def __init__(self, path: Path, batch_size: int):
        self.path = path
        self.batch_size = batch_size
        self._iterator = None
        self._exhausted = False

    async def read_entries(self) -> List[Entry]:
        if self._exhausted:
            return []
        return await asyncio.to_thread(self._next_batch)

    def _next_batch(self) -> List[Entry]:
        if self._iterator is None:
            self._iterator = os.scandir(self.path)
        batch: List[Entry] = []
        try:
            for dirent in self._iterator:
                entry = local_entry(dirent.path, self.batch_size, dirent=dirent)
                if entry is not None:
                    batch.append(entry)
                if len(batch) >= self.batch_size:
                    return batch
        except OSError:
            self._close()
            raise
        self._close()
        return batch

    def _close(self):
        self._exhausted = True
        if self._iterator is not None:
            self._iterator.close()

class LocalDirectoryEntry(DirectoryEntry):
    def __init__(self, path: Union[str, Path], batch_size: Optional[int] = None):
        self.path = Path(path)
        self.name = self.path.name
        self.batch_size = batch_size or settings.DIRECTORY_READ_BATCH_SIZE

    def create_reader(self) -> DirectoryReader:
        return LocalDirectoryReader(self.path, self.batch_size)


def local_entry(path: Union[str, Path], batch_size: Optional[int] = None, dirent: Optional[os.DirEntry] = None) -> Optional[Entry]:
    """Wraps a local path as a host entry. Symlinked directories are not followed; anything else odd is None."""
    if dirent is not None:
        is_dir = dirent.is_dir(follow_symlinks=False)
        is_file = dirent.is_file()
    else:
        p = Path(path)
        is_dir = p.is_dir() and not p.is_symlink()
        is_file = p.is_file()
    if is_dir:
        return LocalDirectoryEntry(path, batch_size)
    if is_file:
        return LocalFileEntry(path)
    logger.debug(f"Ignoring '{path}': not a regular file or directory.")
    return None


def payload_from_paths(paths: Sequence[Union[str, Path]], batch_size: Optional[int] = None) -> DropPayload:
    """Builds a drop payload from local files/folders, dropping paths that do not exist."""
    entries = []
    for path in paths:
        entry = local_entry(path, batch_size)
        if entry is None:
            logger.warning(f"Cannot import '{path}': no such file or directory.")
            continue
        entries.append(entry)
    return DropPayload(entries=entries)
