# core/storage.py
"""
Core Storage Utilities.

Object storage + metadata records for uploaded files, backed by Supabase
Storage (bucket ``FILES_BUCKET``) and a Supabase table (``FILES_TABLE``).
Every failure is raised as ``StorageError`` (or ``RecordNotFoundError`` on
removal) so callers only have to handle one exception family.
"""
import asyncio
import time
from typing import List, Optional

import httpx
from supabase import PostgrestAPIError

from core.blobs import Blob
from core.config import settings, logger as core_logger
from core.file_kind import file_extension, infer_kind
from core.models import PersistedRecord
from core.supabase_client import get_supabase_client, FILES_BUCKET, FILES_TABLE

logger = core_logger.getChild("Storage")

QUOTA_ERROR_MARKERS = ("exceeded", "quota")


class StorageError(Exception):
    """The storage backend rejected or failed an operation."""

class RecordNotFoundError(StorageError):
    """No record with the given id belongs to the given owner."""


def _is_quota_error(message: str) -> bool:
    message = (message or "").lower()
    return any(marker in message for marker in QUOTA_ERROR_MARKERS)


class SupabaseStorage:
    """Persists blobs one at a time and manages their metadata rows."""

    def __init__(self, bucket: str = FILES_BUCKET, table: str = FILES_TABLE, max_file_size: Optional[int] = None):
        self.bucket = bucket
        self.table = table
        self.max_file_size = max_file_size if max_file_size is not None else settings.MAX_FILE_SIZE_BYTES

    async def persist(self, blob: Blob, owner_id: str, tags: List[str]) -> PersistedRecord:
        """Uploads the blob's content and inserts its metadata row. Raises StorageError on any failure."""
        if blob.size > self.max_file_size:
            raise StorageError(
                f"'{blob.name}' is {blob.size / 1024 / 1024:.1f}MB, which is over the "
                f"{self.max_file_size / 1024 / 1024:.0f}MB per-file limit. Try splitting or compressing it."
            )

        ext = file_extension(blob.name)
        object_path = f"{owner_id}/{int(time.time() * 1000)}-{blob.name}"
        job_prefix = f"[{owner_id}:{blob.name}]"
        logger.debug(f"{job_prefix} Persisting {blob.size} bytes to '{self.bucket}/{object_path}'.")

        try:
            supabase = await get_supabase_client(use_service_key=True)
            content = await blob.read()

            def do_upload():
                return supabase.storage.from_(self.bucket).upload(
                    path=object_path,
                    file=content,
                    file_options={"content-type": blob.content_type or "application/octet-stream", "upsert": "false"}
                )
            await asyncio.to_thread(do_upload)
        except (httpx.HTTPError, OSError) as e:
            logger.error(f"{job_prefix} Transport error during upload: {e}", exc_info=False)
            raise StorageError(f"Upload of '{blob.name}' failed: {e}") from e
        except (ValueError, RuntimeError) as e:
            # Client could not be initialised (missing keys etc.)
            logger.error(f"{job_prefix} Storage client unavailable: {e}")
            raise StorageError(f"Storage is not available: {e}") from e
        except Exception as e:
            if _is_quota_error(str(e)):
                logger.error(f"{job_prefix} Storage capacity exhausted: {e}")
                raise StorageError("Storage capacity is exhausted. Remove some files or try again later.") from e
            logger.error(f"{job_prefix} Storage upload rejected: {e}", exc_info=True)
            raise StorageError(f"Upload of '{blob.name}' failed: {e}") from e

        record = {
            "name": blob.name,
            "type": blob.content_type,
            "size": blob.size,
            "tags": list(tags),
            "ext": ext or None,
            "kind": infer_kind(blob.content_type, blob.name),
            "path": object_path,
            "user_id": owner_id,
        }

        try:
            record["url"] = await asyncio.to_thread(supabase.storage.from_(self.bucket).get_public_url, object_path)

            def db_call():
                return supabase.table(self.table)\
                    .insert(record)\
                    .execute()
            response = await asyncio.to_thread(db_call)
        except PostgrestAPIError as e:
            logger.error(f"{job_prefix} Supabase API error inserting record: {e.message} (Code: {e.code}, Details: {e.details})", exc_info=False)
            await self._discard_object(supabase, object_path, job_prefix)
            raise StorageError(f"Uploaded '{blob.name}' but could not save its record: {e.message}") from e
        except Exception as e:
            logger.error(f"{job_prefix} Unexpected error inserting record: {e}", exc_info=True)
            await self._discard_object(supabase, object_path, job_prefix)
            raise StorageError(f"Uploaded '{blob.name}' but could not save its record: {e}") from e

        if not response or not response.data:
            logger.error(f"{job_prefix} Insert returned no data; object '{object_path}' has no record.")
            await self._discard_object(supabase, object_path, job_prefix)
            raise StorageError(f"Uploaded '{blob.name}' but the record insert returned nothing.")

        logger.info(f"{job_prefix} Stored as '{object_path}'.")
        return PersistedRecord(**response.data[0])

    async def _discard_object(self, supabase, object_path: str, job_prefix: str) -> None:
        """Best-effort removal of an uploaded object that ended up without a record."""
        try:
            await asyncio.to_thread(supabase.storage.from_(self.bucket).remove, [object_path])
            logger.info(f"{job_prefix} Removed orphaned object '{object_path}'.")
        except Exception as e:
            logger.warning(f"{job_prefix} Could not remove orphaned object '{object_path}': {e}", exc_info=False)

    async def list(self, owner_id: str) -> List[PersistedRecord]:
        """All records belonging to owner_id, newest first."""
        try:
            supabase = await get_supabase_client(use_service_key=True)

            def db_call():
                return supabase.table(self.table)\
                    .select("*")\
                    .eq("user_id", owner_id)\
                    .order("created_at", desc=True)\
                    .execute()
            response = await asyncio.to_thread(db_call)
        except PostgrestAPIError as e:
            logger.error(f"[{owner_id}] Supabase API error listing records: {e.message} (Code: {e.code})", exc_info=False)
            raise StorageError(f"Could not list files: {e.message}") from e
        except Exception as e:
            logger.error(f"[{owner_id}] Unexpected error listing records: {e}", exc_info=True)
            raise StorageError(f"Could not list files: {e}") from e

        records = []
        for item in response.data or []:
            try:
                records.append(PersistedRecord(**item))
            except Exception as p_err:
                logger.warning(f"[{owner_id}] Skipping unparseable record {item.get('id', 'UNKNOWN')}: {p_err}", exc_info=False)
        return records

    async def usage(self, owner_id: str) -> int:
        """Total bytes currently stored by owner_id, counting every row including ones list() cannot parse."""
        try:
            supabase = await get_supabase_client(use_service_key=True)

            def db_call():
                return supabase.table(self.table)\
                    .select("size")\
                    .eq("user_id", owner_id)\
                    .execute()
            response = await asyncio.to_thread(db_call)
        except PostgrestAPIError as e:
            logger.error(f"[{owner_id}] Supabase API error reading usage: {e.message} (Code: {e.code})", exc_info=False)
            raise StorageError(f"Could not read storage usage: {e.message}") from e
        except Exception as e:
            logger.error(f"[{owner_id}] Unexpected error reading usage: {e}", exc_info=True)
            raise StorageError(f"Could not read storage usage: {e}") from e

        total = 0
        for item in response.data or []:
            try:
                total += int(item.get("size") or 0)
            except (TypeError, ValueError):
                logger.warning(f"[{owner_id}] Ignoring non-numeric size {item.get('size')!r} in usage total.")
        return total

    async def remove(self, record_id: str, owner_id: str) -> None:
        """Deletes the stored object and its record. Raises RecordNotFoundError when nothing matches."""
        job_prefix = f"[{owner_id}:{record_id}]"
        try:
            supabase = await get_supabase_client(use_service_key=True)

            def lookup():
                return supabase.table(self.table)\
                    .select("path")\
                    .eq("id", record_id)\
                    .eq("user_id", owner_id)\
                    .limit(1)\
                    .maybe_single()\
                    .execute()
            response = await asyncio.to_thread(lookup)
        except PostgrestAPIError as e:
            logger.error(f"{job_prefix} Supabase API error looking up record: {e.message}", exc_info=False)
            raise StorageError(f"Could not look up file: {e.message}") from e
        except Exception as e:
            logger.error(f"{job_prefix} Unexpected error looking up record: {e}", exc_info=True)
            raise StorageError(f"Could not look up file: {e}") from e

        if not response or not response.data:
            logger.info(f"{job_prefix} No record to remove.")
            raise RecordNotFoundError(f"File {record_id} not found.")

        object_path = response.data["path"]
        try:
            await asyncio.to_thread(supabase.storage.from_(self.bucket).remove, [object_path])

            def delete_row():
                return supabase.table(self.table)\
                    .delete()\
                    .eq("id", record_id)\
                    .eq("user_id", owner_id)\
                    .execute()
            await asyncio.to_thread(delete_row)
        except PostgrestAPIError as e:
            logger.error(f"{job_prefix} Supabase API error deleting record: {e.message}", exc_info=False)
            raise StorageError(f"Could not delete file: {e.message}") from e
        except Exception as e:
            logger.error(f"{job_prefix} Unexpected error deleting file: {e}", exc_info=True)
            raise StorageError(f"Could not delete file: {e}") from e
        logger.info(f"{job_prefix} Removed '{object_path}'.")
