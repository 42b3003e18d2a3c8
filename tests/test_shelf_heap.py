import threading

import pytest

from famshelf.shelf_heap import (
    MAGIC_NUM,
    METADATA_SIZE,
    NvHeapLayout,
    ShelfHeap,
    ShelfHeapError,
)
from famshelf.smart_shelf import CACHE_LINE_SIZE

HEAP_SIZE = 64 * 1024


@pytest.fixture
def shelf_path(tmp_path):
    path = tmp_path / "shelf"
    path.touch()
    return path


@pytest.fixture
def heap_path(shelf_path):
    ShelfHeap(shelf_path).create(HEAP_SIZE)
    return shelf_path


def test_layout_create_and_verify_on_bytearray():
    buf = bytearray(METADATA_SIZE + 1024)
    assert not NvHeapLayout.verify(buf)
    NvHeapLayout.create(buf, 1024)
    assert NvHeapLayout.verify(buf)
    assert bytes(buf[:8]) == MAGIC_NUM.to_bytes(8, "little")
    layout = NvHeapLayout(buf)
    assert layout.size() == 1024
    assert layout.next_free() == METADATA_SIZE


def test_layout_alloc_zero_does_not_advance():
    buf = bytearray(METADATA_SIZE + 1024)
    NvHeapLayout.create(buf, 1024)
    layout = NvHeapLayout(buf)
    assert layout.alloc(0) == METADATA_SIZE
    assert layout.next_free() == METADATA_SIZE


def test_layout_free_is_noop():
    buf = bytearray(METADATA_SIZE + 1024)
    NvHeapLayout.create(buf, 1024)
    layout = NvHeapLayout(buf)
    first = layout.alloc(1)
    layout.free(first)
    assert layout.alloc(1) == first + CACHE_LINE_SIZE


def test_layout_destroy_wipes():
    buf = bytearray(METADATA_SIZE + 1024)
    NvHeapLayout.create(buf, 1024)
    NvHeapLayout.destroy(buf)
    assert not NvHeapLayout.verify(buf)
    assert NvHeapLayout(buf).size() == 0


def test_layout_destroy_unformatted_raises():
    with pytest.raises(ValueError):
        NvHeapLayout.destroy(bytearray(METADATA_SIZE + 64))


def test_layout_create_rejects_bad_sizes():
    with pytest.raises(ValueError):
        NvHeapLayout.create(bytearray(METADATA_SIZE + 64), 0)
    with pytest.raises(ValueError):
        NvHeapLayout.create(bytearray(METADATA_SIZE + 64), 4096)


def test_create_requires_existing_file(tmp_path):
    with pytest.raises(ShelfHeapError):
        ShelfHeap(tmp_path / "missing").create(HEAP_SIZE)


def test_create_sizes_file_and_verifies(heap_path):
    assert heap_path.stat().st_size == HEAP_SIZE + METADATA_SIZE
    assert ShelfHeap(heap_path).verify()


def test_verify_empty_and_garbage(shelf_path):
    assert not ShelfHeap(shelf_path).verify()
    shelf_path.write_bytes(b"\xff" * 4096)
    assert not ShelfHeap(shelf_path).verify()
    with pytest.raises(ShelfHeapError):
        ShelfHeap(shelf_path).open()


def test_open_close_and_size(heap_path):
    heap = ShelfHeap(heap_path)
    heap.open()
    assert heap.is_open
    assert heap.size() == HEAP_SIZE
    heap.close()
    assert not heap.is_open
    with pytest.raises(ShelfHeapError):
        heap.close()


def test_operations_require_open(heap_path):
    heap = ShelfHeap(heap_path)
    with pytest.raises(ShelfHeapError):
        heap.alloc(8)
    with pytest.raises(ShelfHeapError):
        heap.size()


def test_alloc_is_sequential_and_aligned(heap_path):
    with ShelfHeap(heap_path) as heap:
        first = heap.alloc(1)
        second = heap.alloc(1)
        assert first == METADATA_SIZE
        assert second - first == CACHE_LINE_SIZE
        assert second % CACHE_LINE_SIZE == 0


def test_alloc_returns_zero_when_full(heap_path):
    with ShelfHeap(heap_path) as heap:
        assert heap.alloc(HEAP_SIZE) == METADATA_SIZE
        assert heap.alloc(1) == 0


def test_is_valid_offset_bounds(heap_path):
    with ShelfHeap(heap_path) as heap:
        assert not heap.is_valid_offset(0)
        assert not heap.is_valid_offset(METADATA_SIZE - 1)
        assert heap.is_valid_offset(METADATA_SIZE)
        assert heap.is_valid_offset(METADATA_SIZE + HEAP_SIZE - 1)
        assert not heap.is_valid_offset(METADATA_SIZE + HEAP_SIZE)


def test_data_and_allocation_state_persist(heap_path):
    payload = b"0123456789abcdef"
    with ShelfHeap(heap_path) as heap:
        offset = heap.alloc(len(payload))
        with heap.offset_to_view(offset, len(payload)) as view:
            view[:] = payload
    with ShelfHeap(heap_path) as heap:
        with heap.offset_to_view(offset, len(payload)) as view:
            assert bytes(view) == payload
        assert heap.alloc(1) > offset


def test_offset_to_view_rejects_invalid(heap_path):
    with ShelfHeap(heap_path) as heap:
        with pytest.raises(ValueError):
            heap.offset_to_view(0, 8)
        with pytest.raises(ValueError):
            heap.offset_to_view(METADATA_SIZE + HEAP_SIZE - 4, 8)


def test_close_refused_while_view_held(heap_path):
    heap = ShelfHeap(heap_path)
    heap.open()
    view = heap.offset_to_view(heap.alloc(8), 8)
    with pytest.raises(ShelfHeapError):
        heap.close()
    assert heap.is_open
    view.release()
    heap.close()
    assert not heap.is_open


def test_map_sees_written_data(heap_path):
    payload = bytes(range(100))
    with ShelfHeap(heap_path) as heap:
        offset = heap.alloc(len(payload))
        with heap.offset_to_view(offset, len(payload)) as view:
            view[:] = payload
        mapped = heap.map(offset, len(payload))
        assert bytes(mapped) == payload
        mapped.release()


def test_map_past_end_raises(heap_path):
    with ShelfHeap(heap_path) as heap:
        with pytest.raises(ShelfHeapError):
            heap.map(METADATA_SIZE + HEAP_SIZE, 64)


def test_destroy_checks(tmp_path, heap_path):
    with pytest.raises(ShelfHeapError):
        ShelfHeap(tmp_path / "missing").destroy()
    heap = ShelfHeap(heap_path)
    heap.open()
    with pytest.raises(ShelfHeapError):
        heap.destroy()
    heap.close()
    heap.destroy()
    assert heap_path.exists()


def test_concurrent_allocations_are_distinct(heap_path):
    results: list[int] = []
    guard = threading.Lock()
    with ShelfHeap(heap_path) as heap:

        def worker():
            mine = [heap.alloc(CACHE_LINE_SIZE) for _ in range(50)]
            with guard:
                results.extend(mine)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(set(results)) == len(results)
        assert all(heap.is_valid_offset(offset) for offset in results)