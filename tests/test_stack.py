import threading

import pytest

from famshelf.smart_shelf import CACHE_LINE_SIZE, SmartShelf, read_u128, read_u64
from famshelf.stack import Stack


def _blocks(first, count):
    return [first + i * CACHE_LINE_SIZE for i in range(count)]


def test_pop_empty_returns_zero():
    buf = bytearray(4096)
    stack = Stack(buf, 0, buf)
    assert stack.pop() == 0


def test_lifo_order():
    buf = bytearray(4096)
    stack = Stack(buf, 0, buf)
    blocks = _blocks(64, 3)
    for block in blocks:
        stack.push(block)
    assert [stack.pop() for _ in blocks] == list(reversed(blocks))
    assert stack.pop() == 0


def test_block_links_to_previous_top():
    buf = bytearray(4096)
    stack = Stack(buf, 0, buf)
    stack.push(64)
    stack.push(128)
    assert read_u64(buf, 128) == 64
    assert read_u64(buf, 64) == 0
    assert read_u128(buf, 0)[0] == 128


def test_aba_counter_counts_head_writes():
    buf = bytearray(4096)
    stack = Stack(buf, 0, buf)
    blocks = _blocks(64, 4)
    for block in blocks:
        stack.push(block)
    for _ in blocks:
        stack.pop()
    stack.pop()  # empty pop does not write the head
    assert read_u128(buf, 0) == (0, 2 * len(blocks))


def test_push_zero_rejected():
    buf = bytearray(4096)
    stack = Stack(buf, 0, buf)
    with pytest.raises(ValueError):
        stack.push(0)
    assert read_u128(buf, 0) == (0, 0)


def test_head_and_blocks_in_separate_buffers():
    head = bytearray(16)
    region = bytearray(4096)
    stack = Stack(head, 0, region)
    stack.push(512)
    stack.push(1024)
    assert read_u64(region, 1024) == 512
    assert stack.pop() == 1024
    assert stack.pop() == 512
    assert stack.pop() == 0


def test_stack_over_smart_shelf():
    buf = bytearray(8192)
    shelf = SmartShelf(buf, 16, 8192)
    head_offset = CACHE_LINE_SIZE  # in the fixed section
    stack = Stack(buf, head_offset, shelf)
    blocks = _blocks(shelf.start_ptr(), 5)
    for block in blocks:
        stack.push(block)
    popped = []
    while (block := stack.pop()) != 0:
        popped.append(block)
    assert popped == list(reversed(blocks))


def test_state_shared_between_stack_objects():
    buf = bytearray(4096)
    Stack(buf, 0, buf).push(256)
    assert Stack(buf, 0, buf).pop() == 256


def test_concurrent_push_pop_loses_nothing():
    buf = bytearray(64 * 1024)
    stack = Stack(buf, 0, buf)
    blocks = _blocks(CACHE_LINE_SIZE, 400)
    for block in blocks:
        stack.push(block)

    def churn():
        for _ in range(200):
            block = stack.pop()
            if block:
                stack.push(block)

    threads = [threading.Thread(target=churn) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    remaining = []
    while (block := stack.pop()) != 0:
        remaining.append(block)
    assert sorted(remaining) == blocks