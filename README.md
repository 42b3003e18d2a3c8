# famshelf

Building blocks for data structures that live in a shared, byte-addressable
memory region such as a memory-mapped file. Every structure keeps its state in
the region, so several processes that map the same file see the same state.

The atomic helpers serialise through one process-wide lock. They are atomic
between the threads of one process. Across processes they rely on
compare-and-store retries in the structures that use them.

## Contents

- `famshelf.smart_shelf`: `SmartShelf` lays out a region as a metadata line,
  a fixed section and a variable section. The module also holds the
  little-endian atomic helpers `read_u64`, `write_u64`, `cas_u64`,
  `read_u128`, `write_u128` and `cas_u128`, and `round_up`. `ShelfIOError`
  is an `OSError` that carries an errno value.
- `famshelf.stack`: `Stack` is a lock-free stack of blocks. Its head is a
  block offset paired with an ABA counter. `pop()` returns 0 when the stack
  is empty.
- `famshelf.fixed_block_allocator`: `FixedBlockAllocator` hands out
  fixed-size, cache-line-aligned blocks from a shelf. Freed blocks are
  reused. `alloc()` returns 0 when no block is left.
- `famshelf.freelists`: `FreeLists` is a set of persistent lists of 64-bit
  pointers, one list per shelf index. `put_pointer()` returns `False` when
  no block is free to hold the pointer. `get_pointer()` raises
  `FreeListsEmpty` on an empty list. Other failures raise `FreeListsError`.
- `famshelf.ownership`: `Ownership` is a table of items. Each item is owned
  by a `ProcessId`, which is a pid together with the process start time.
  `acquire_item()`, `release_item()`, `check_item()` and `owner()` work on
  single items. `check_and_revoke_item()` clears an item whose owner has
  died. If you pass it a recovery callback, it runs that callback first.
- `famshelf.shelf_heap`: `ShelfHeap` is a bump-pointer heap kept in an
  existing shelf file. `NvHeapLayout` is its on-shelf layout. Offsets are
  absolute, so 0 never names a valid allocation. Space is never reclaimed.
- `famshelf.shelf_region`: `ShelfRegion` is a raw region kept in an existing
  shelf file. You can size it, map it, and read or change its permission
  bits.
- `famshelf.participant_manager`: `get_self_id()`, `is_alive(pid)` and
  `terminate(pid)` identify participant processes, probe them and kill them
  with SIGKILL.
- `famshelf.epoch_vector`: `SharedEpochVector` holds the frontier epoch and
  one slot per participant in shared memory. `EpochVector` is one process's
  cached view of it, and iterating over it yields a `Participant` for every
  slot. `register_participant()` raises `EpochVectorFull` when every slot is
  taken.

## Examples

A fixed block allocator on an anonymous mapping:

```python
import mmap

from famshelf.fixed_block_allocator import FixedBlockAllocator

region = mmap.mmap(-1, 1 << 20)
fba = FixedBlockAllocator(region, 64, 0, 0, 1 << 20)

block = fba.alloc()
fba.from_offset(block)[:5] = b"hello"
fba.free(block)
```

Registering in an epoch vector:

```python
import mmap

from famshelf.epoch_vector import SHARED_SIZE, EpochVector, SharedEpochVector
from famshelf.participant_manager import get_self_id

region = mmap.mmap(-1, SHARED_SIZE)
vector = EpochVector(SharedEpochVector(region), True)

participant = vector.register_participant(get_self_id())
participant.activate()
assert participant.reported() == vector.frontier()
participant.unregister()
```

## What the package does not do

The package has no reader/writer lock and no epoch manager. Nothing advances
the frontier in the background, sends heartbeats, or detects and terminates
participants that have stopped reporting. A program that needs these drives
`EpochVector.cas_frontier()`, `Participant.update_reported()` and
`participant_manager.terminate()` itself.

## Tests

```
pip install -e .[test]
pytest
```