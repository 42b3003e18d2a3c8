"""Shared-memory shelf data structures: stacks, block allocators, free lists, ownership, heaps, regions and epoch vectors."""

__version__ = "0.1.0"
__all__ = [
    "smart_shelf",
    "stack",
    "fixed_block_allocator",
    "freelists",
    "ownership",
    "shelf_heap",
    "shelf_region",
    "participant_manager",
    "epoch_vector",
]