import threading

import pytest

from famshelf.fixed_block_allocator import FixedBlockAllocator
from famshelf.smart_shelf import CACHE_LINE_SIZE

POOL_SIZE = 4 * 4096


def make(buffer=None, block_size=CACHE_LINE_SIZE, user_metadata_size=0, pool=POOL_SIZE):
    if buffer is None:
        buffer = bytearray(pool)
    return buffer, FixedBlockAllocator(buffer, block_size, user_metadata_size, 0, pool)


def test_block_size_rounded_to_cache_line():
    _, fba = make(block_size=1)
    assert fba.block_size() == CACHE_LINE_SIZE


def test_zero_block_size_becomes_one_cache_line():
    _, fba = make(block_size=0)
    assert fba.block_size() == CACHE_LINE_SIZE


def test_first_allocation_is_first_block():
    _, fba = make()
    shelf = fba.underlying_shelf()
    assert fba.alloc() == shelf.start_ptr()


def test_blocks_are_distinct_and_aligned():
    _, fba = make()
    blocks = [fba.alloc() for _ in range(10)]
    assert len(set(blocks)) == 10
    assert all(b % fba.block_size() == 0 for b in blocks)
    assert all(b > 0 for b in blocks)


def test_exhaustion_returns_zero_after_max_blocks():
    _, fba = make()
    count = fba.max_blocks()
    blocks = [fba.alloc() for _ in range(count)]
    assert 0 not in blocks
    assert max(blocks) + fba.block_size() <= fba.size()
    assert fba.alloc() == 0


def test_free_is_lifo():
    _, fba = make()
    a = fba.alloc()
    b = fba.alloc()
    fba.free(a)
    fba.free(b)
    assert fba.alloc() == b
    assert fba.alloc() == a


def test_free_zero_is_noop():
    _, fba = make()
    a = fba.alloc()
    fba.free(0)
    fba.unsafe_free(0)
    assert fba.alloc() == a + fba.block_size()


def test_freed_block_can_be_reused_after_exhaustion():
    _, fba = make()
    blocks = [fba.alloc() for _ in range(fba.max_blocks())]
    assert fba.alloc() == 0
    fba.unsafe_free(blocks[3])
    assert fba.alloc() == blocks[3]


def test_reopen_continues_allocation():
    buffer, first = make()
    a = first.alloc()
    b = first.alloc()
    _, second = make(buffer)
    c = second.alloc()
    assert c not in (a, b)
    assert c == b + second.block_size()


def test_reopen_shares_free_list():
    buffer, first = make()
    a = first.alloc()
    first.free(a)
    _, second = make(buffer)
    assert second.alloc() == a


def test_incompatible_block_size_raises():
    buffer, _ = make(block_size=CACHE_LINE_SIZE)
    with pytest.raises(RuntimeError, match="block size"):
        make(buffer, block_size=2 * CACHE_LINE_SIZE)


def test_incompatible_user_metadata_size_raises():
    buffer, _ = make(user_metadata_size=0)
    with pytest.raises(RuntimeError, match="user metadata size"):
        make(buffer, user_metadata_size=CACHE_LINE_SIZE)


def test_insufficient_space_for_user_metadata():
    with pytest.raises(RuntimeError, match="insufficient space"):
        make(user_metadata_size=2 * POOL_SIZE)


def test_user_metadata_round_trip():
    buffer, fba = make(user_metadata_size=10)
    assert fba.user_metadata_size() == CACHE_LINE_SIZE
    meta = fba.user_metadata()
    assert len(meta) == fba.user_metadata_size()
    meta[:5] = b"hello"
    _, again = make(buffer, user_metadata_size=10)
    assert bytes(again.user_metadata()[:5]) == b"hello"


def test_blocks_follow_user_metadata():
    _, fba = make(user_metadata_size=CACHE_LINE_SIZE)
    shelf = fba.underlying_shelf()
    assert fba.alloc() >= shelf.start_ptr() + fba.user_metadata_size()


def test_offset_round_trip():
    _, fba = make()
    block = fba.alloc()
    view = fba.from_offset(block)
    view[:4] = b"data"
    assert fba.to_offset(view) == block
    assert bytes(fba[block][:4]) == b"data"
    assert fba.from_offset(0) is None
    assert fba.to_offset(None) == 0


def test_concurrent_allocation_is_unique():
    _, fba = make()
    results = []
    lock = threading.Lock()

    def worker():
        got = [fba.alloc() for _ in range(20)]
        with lock:
            results.extend(got)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(results) == 100
    assert 0 not in results
    assert len(set(results)) == 100
    assert min(results) == fba.underlying_shelf().start_ptr()
    assert fba.alloc() == max(results) + fba.block_size()