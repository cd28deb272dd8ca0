import asyncio
import pytest

from core.blobs import BytesBlob, LocalFileBlob
from services.upload_service.app.traversal import (
    DirectoryEntry, DirectoryReader, DropPayload, FileEntry, LocalDirectoryEntry, LocalDirectoryReader,
    TraversalError, collect, payload_from_paths,
)


# --- Fake host entries ---

class FakeFile(FileEntry):
    def __init__(self, name, data=b"x", fail=False):
        self.name = name
        self.data = data
        self.fail = fail

    async def file(self):
        await asyncio.sleep(0) # Resolve on a later loop turn, like a host callback
        if self.fail:
            raise TraversalError(f"cannot read {self.name}")
        return BytesBlob(self.data, name=self.name)

class FakeReader(DirectoryReader):
    def __init__(self, batches, fail_on_call=None):
        self.batches = [list(b) for b in batches]
        self.calls = 0
        self.fail_on_call = fail_on_call

    async def read_entries(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.fail_on_call == self.calls:
            raise TraversalError("read failed")
        return self.batches.pop(0) if self.batches else []

class FakeDir(DirectoryEntry):
    def __init__(self, name, children=(), batches=None, fail_on_call=None):
        self.name = name
        self.batches = batches if batches is not None else [list(children)]
        self.fail_on_call = fail_on_call
        self.readers = []

    def create_reader(self):
        reader = FakeReader(self.batches, self.fail_on_call)
        self.readers.append(reader)
        return reader


def paths(items):
    return [item.relative_path for item in items]


# --- Tests for collect ---

@pytest.mark.asyncio
async def test_directories_without_files_yield_nothing():
    payload = DropPayload(entries=[FakeDir("empty"), FakeDir("outer", [FakeDir("inner", [FakeDir("deeper")])])])
    items = await collect(payload)
    assert items == []

@pytest.mark.asyncio
async def test_children_split_across_batches_are_each_collected_once():
    root = FakeDir("root", batches=[[FakeFile("a.txt")], [FakeFile("b.txt")]])
    items = await collect(DropPayload(entries=[root]))

    assert paths(items) == ["root/a.txt", "root/b.txt"]
    # Two non-empty batches, then the empty one that ends the directory
    assert root.readers[0].calls == 3

@pytest.mark.asyncio
async def test_nested_paths_are_slash_joined_without_leading_separator():
    root = FakeDir("root", [FakeFile("a.txt"), FakeDir("sub", [FakeFile("b.txt")])])
    items = await collect(DropPayload(entries=[root]))
    assert paths(items) == ["root/a.txt", "root/sub/b.txt"]

@pytest.mark.asyncio
async def test_discovery_order_is_depth_first_in_host_order():
    root = FakeDir("root", batches=[
        [FakeFile("z.txt"), FakeDir("sub", [FakeFile("inner.txt")])],
        [FakeFile("a.txt")],
    ])
    loose = FakeFile("loose.md")
    items = await collect(DropPayload(entries=[root, loose]))
    assert paths(items) == ["root/z.txt", "root/sub/inner.txt", "root/a.txt", "loose.md"]

@pytest.mark.asyncio
async def test_top_level_file_uses_its_own_name():
    items = await collect(DropPayload(entries=[FakeFile("photo.png", data=b"12345")]))
    assert paths(items) == ["photo.png"]
    assert items[0].size == 5

@pytest.mark.asyncio
async def test_duplicates_are_preserved():
    root = FakeDir("root", [FakeFile("same.txt"), FakeFile("same.txt")])
    items = await collect(DropPayload(entries=[root]))
    assert paths(items) == ["root/same.txt", "root/same.txt"]
    assert items[0].blob is not items[1].blob

@pytest.mark.asyncio
async def test_flat_files_fall_back_to_path_hint_or_empty():
    with_hint = BytesBlob(b"a", name="a.txt", relative_path="picked/a.txt")
    without_hint = BytesBlob(b"b", name="b.txt")
    items = await collect(DropPayload(files=[with_hint, without_hint]))

    assert paths(items) == ["picked/a.txt", ""]
    assert items[1].upload_name == "b.txt"

@pytest.mark.asyncio
async def test_entries_take_precedence_over_flat_files_with_warning(caplog):
    payload = DropPayload(entries=[FakeDir("root", [FakeFile("a.txt")])], files=[BytesBlob(b"a", name="a.txt", relative_path="root/a.txt")])

    with caplog.at_level("WARNING", logger="DropUpload_Core"):
        items = await collect(payload)

    assert paths(items) == ["root/a.txt"]
    assert "Ignoring 1 flat files" in caplog.text

@pytest.mark.asyncio
async def test_unreadable_file_is_skipped_and_walk_continues():
    root = FakeDir("root", [FakeFile("bad.bin", fail=True), FakeFile("good.txt")])
    items = await collect(DropPayload(entries=[root, FakeFile("after.txt")]))
    assert paths(items) == ["root/good.txt", "after.txt"]

@pytest.mark.asyncio
async def test_failed_batch_keeps_children_read_before_it():
    broken = FakeDir("broken", batches=[[FakeFile("first.txt")], [FakeFile("never.txt")]], fail_on_call=2)
    items = await collect(DropPayload(entries=[broken, FakeDir("ok", [FakeFile("c.txt")])]))
    assert paths(items) == ["broken/first.txt", "ok/c.txt"]

@pytest.mark.asyncio
async def test_very_deep_tree_does_not_hit_recursion_limit():
    depth = 3000
    node = FakeDir("d", [FakeFile("leaf.txt")])
    for _ in range(depth - 1):
        node = FakeDir("d", [node])
    items = await collect(DropPayload(entries=[node]))

    assert len(items) == 1
    assert items[0].relative_path == "/".join(["d"] * depth + ["leaf.txt"])


# --- Local filesystem host ---

@pytest.mark.asyncio
async def test_local_directory_tree(tmp_path):
    root = tmp_path / "root"
    (root / "sub").mkdir(parents=True)
    (root / "empty").mkdir()
    (root / "a.txt").write_bytes(b"aaa")
    (root / "sub" / "b.txt").write_bytes(b"bb")
    (root / "sub" / "c.txt").write_bytes(b"c")

    items = await collect(DropPayload(entries=[LocalDirectoryEntry(root, batch_size=1)]))

    # os.scandir order is unspecified
    assert sorted(paths(items)) == ["root/a.txt", "root/sub/b.txt", "root/sub/c.txt"]
    assert all(isinstance(item.blob, LocalFileBlob) for item in items)
    sizes = {item.relative_path: item.size for item in items}
    assert sizes["root/a.txt"] == 3
    by_path = {item.relative_path: item for item in items}
    assert await by_path["root/sub/b.txt"].blob.read() == b"bb"

@pytest.mark.asyncio
async def test_local_reader_pages_in_batches(tmp_path):
    for i in range(5):
        (tmp_path / f"f{i}.txt").write_bytes(b"x")
    reader = LocalDirectoryReader(tmp_path, batch_size=2)

    sizes = []
    while True:
        batch = await reader.read_entries()
        if not batch:
            break
        sizes.append(len(batch))
    assert sizes == [2, 2, 1]
    assert await reader.read_entries() == []

@pytest.mark.asyncio
async def test_payload_from_paths_skips_missing(tmp_path):
    (tmp_path / "here.txt").write_bytes(b"1")
    payload = payload_from_paths([tmp_path / "here.txt", tmp_path / "missing.txt"])
    items = await collect(payload)
    assert paths(items) == ["here.txt"]
