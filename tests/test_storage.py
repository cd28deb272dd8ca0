import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from core.blobs import BytesBlob
from core.models import PersistedRecord
from core.storage import RecordNotFoundError, StorageError, SupabaseStorage

OWNER_ID = "user-1"


def row(**overrides):
    data = {
        "id": "rec-1", "name": "docs/a.txt", "type": "text/plain", "size": 3,
        "tags": ["document", "txt"], "kind": "document", "ext": "txt",
        "path": "user-1/1700000000000-docs/a.txt", "url": "https://cdn.example/a.txt",
        "user_id": OWNER_ID, "created_at": "2024-05-01T10:00:00+00:00",
    }
    data.update(overrides)
    return data

@pytest.fixture
def mock_supabase():
    client = MagicMock()
    bucket = client.storage.from_.return_value
    bucket.get_public_url.return_value = "https://cdn.example/a.txt"
    client.table.return_value.insert.return_value.execute.return_value = MagicMock(data=[row()])
    return client

@pytest.fixture
def mock_get_client(mock_supabase):
    with patch("core.storage.get_supabase_client", new_callable=AsyncMock) as mock_get:
        mock_get.return_value = mock_supabase
        yield mock_get


# --- persist ---

@pytest.mark.asyncio
async def test_persist_uploads_and_inserts_record(mock_get_client, mock_supabase):
    storage = SupabaseStorage(bucket="files", table="files", max_file_size=100)
    blob = BytesBlob(b"abc", name="docs/a.txt", content_type="text/plain")

    record = await storage.persist(blob, OWNER_ID, ["document", "txt"])

    assert isinstance(record, PersistedRecord)
    assert record.owner_id == OWNER_ID
    mock_get_client.assert_awaited_once_with(use_service_key=True)

    upload_kwargs = mock_supabase.storage.from_.return_value.upload.call_args.kwargs
    assert upload_kwargs["path"].startswith("user-1/")
    assert upload_kwargs["path"].endswith("-docs/a.txt")
    assert upload_kwargs["file"] == b"abc"
    assert upload_kwargs["file_options"]["content-type"] == "text/plain"

    inserted = mock_supabase.table.return_value.insert.call_args.args[0]
    assert inserted["name"] == "docs/a.txt"
    assert inserted["tags"] == ["document", "txt"]
    assert inserted["kind"] == "document"
    assert inserted["ext"] == "txt"
    assert inserted["user_id"] == OWNER_ID
    assert inserted["path"] == upload_kwargs["path"]
    assert inserted["url"] == "https://cdn.example/a.txt"

@pytest.mark.asyncio
async def test_persist_rejects_oversized_blob_before_any_call(mock_get_client):
    storage = SupabaseStorage(max_file_size=2)
    with pytest.raises(StorageError, match="per-file limit"):
        await storage.persist(BytesBlob(b"abc", name="big.bin"), OWNER_ID, ["other"])
    mock_get_client.assert_not_called()

@pytest.mark.asyncio
async def test_persist_maps_quota_errors(mock_get_client, mock_supabase):
    mock_supabase.storage.from_.return_value.upload.side_effect = Exception("Bucket quota exceeded")
    storage = SupabaseStorage(max_file_size=100)

    with pytest.raises(StorageError, match="capacity is exhausted"):
        await storage.persist(BytesBlob(b"abc", name="a.txt"), OWNER_ID, ["document", "txt"])
    mock_supabase.table.return_value.insert.assert_not_called()

@pytest.mark.asyncio
async def test_persist_wraps_other_upload_errors(mock_get_client, mock_supabase):
    mock_supabase.storage.from_.return_value.upload.side_effect = Exception("The resource already exists")
    storage = SupabaseStorage(max_file_size=100)

    with pytest.raises(StorageError, match="already exists"):
        await storage.persist(BytesBlob(b"abc", name="a.txt"), OWNER_ID, [])

@pytest.mark.asyncio
async def test_persist_fails_when_insert_returns_nothing(mock_get_client, mock_supabase):
    mock_supabase.table.return_value.insert.return_value.execute.return_value = MagicMock(data=[])
    storage = SupabaseStorage(max_file_size=100)

    with pytest.raises(StorageError, match="record insert returned nothing"):
        await storage.persist(BytesBlob(b"abc", name="a.txt"), OWNER_ID, [])

@pytest.mark.asyncio
async def test_persist_removes_uploaded_object_when_insert_fails(mock_get_client, mock_supabase):
    mock_supabase.table.return_value.insert.return_value.execute.side_effect = Exception("insert timed out")
    storage = SupabaseStorage(max_file_size=100)

    with pytest.raises(StorageError, match="could not save its record"):
        await storage.persist(BytesBlob(b"abc", name="a.txt"), OWNER_ID, [])

    bucket = mock_supabase.storage.from_.return_value
    object_path = bucket.upload.call_args.kwargs["path"]
    bucket.remove.assert_called_once_with([object_path])

@pytest.mark.asyncio
async def test_persist_keeps_insert_error_when_cleanup_also_fails(mock_get_client, mock_supabase):
    mock_supabase.table.return_value.insert.return_value.execute.return_value = MagicMock(data=[])
    mock_supabase.storage.from_.return_value.remove.side_effect = Exception("bucket unreachable")
    storage = SupabaseStorage(max_file_size=100)

    with pytest.raises(StorageError, match="record insert returned nothing"):
        await storage.persist(BytesBlob(b"abc", name="a.txt"), OWNER_ID, [])
    mock_supabase.storage.from_.return_value.remove.assert_called_once()

@pytest.mark.asyncio
async def test_persist_reports_missing_configuration():
    with patch("core.storage.get_supabase_client", new_callable=AsyncMock) as mock_get:
        mock_get.side_effect = ValueError("Supabase URL or Service Role Key not configured")
        with pytest.raises(StorageError, match="not available"):
            await SupabaseStorage(max_file_size=100).persist(BytesBlob(b"a", name="a.txt"), OWNER_ID, [])


# --- list / usage ---

@pytest.mark.asyncio
async def test_list_skips_unparseable_rows(mock_get_client, mock_supabase):
    query = mock_supabase.table.return_value.select.return_value.eq.return_value.order.return_value
    query.execute.return_value = MagicMock(data=[row(id="r1", size=5), row(id="r2", size=7), {"id": "broken"}])

    records = await SupabaseStorage().list(OWNER_ID)

    assert [r.id for r in records] == ["r1", "r2"]
    mock_supabase.table.return_value.select.assert_called_with("*")
    mock_supabase.table.return_value.select.return_value.eq.assert_called_with("user_id", OWNER_ID)
    mock_supabase.table.return_value.select.return_value.eq.return_value.order.assert_called_with("created_at", desc=True)

@pytest.mark.asyncio
async def test_usage_sums_size_column_of_every_row(mock_get_client, mock_supabase):
    # A row that list() would skip still occupies storage
    query = mock_supabase.table.return_value.select.return_value.eq.return_value
    query.execute.return_value = MagicMock(data=[{"size": 5}, {"size": 7}, {"size": 30, "kind": None}, {"size": None}])

    usage = await SupabaseStorage().usage(OWNER_ID)

    assert usage == 42
    mock_supabase.table.return_value.select.assert_called_with("size")
    mock_supabase.table.return_value.select.return_value.eq.assert_called_with("user_id", OWNER_ID)

@pytest.mark.asyncio
async def test_usage_wraps_backend_errors(mock_get_client, mock_supabase):
    mock_supabase.table.return_value.select.return_value.eq.return_value.execute.side_effect = Exception("connection reset")
    with pytest.raises(StorageError, match="storage usage"):
        await SupabaseStorage().usage(OWNER_ID)


# --- remove ---

def lookup_chain(mock_supabase):
    return mock_supabase.table.return_value.select.return_value.eq.return_value.eq.return_value.limit.return_value.maybe_single.return_value

@pytest.mark.asyncio
async def test_remove_missing_record_raises_not_found(mock_get_client, mock_supabase):
    lookup_chain(mock_supabase).execute.return_value = None

    with pytest.raises(RecordNotFoundError):
        await SupabaseStorage().remove("rec-404", OWNER_ID)
    mock_supabase.storage.from_.return_value.remove.assert_not_called()

@pytest.mark.asyncio
async def test_remove_deletes_object_and_row(mock_get_client, mock_supabase):
    lookup_chain(mock_supabase).execute.return_value = MagicMock(data={"path": "user-1/1-a.txt"})

    await SupabaseStorage().remove("rec-1", OWNER_ID)

    mock_supabase.storage.from_.return_value.remove.assert_called_once_with(["user-1/1-a.txt"])
    mock_supabase.table.return_value.delete.return_value.eq.assert_called_with("id", "rec-1")
