from pathlib import Path
import sys

root_dir = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(root_dir / 'tool'))

from address_cache import AddressCache


def test_observe_marks_new_addresses_pending():
    cache = AddressCache()
    cache.observe('0xa')
    cache.observe('0xb')
    cache.observe('0xa')
    assert cache.touch_count('0xa') == 2
    assert cache.pending_count() == 2
    assert cache.drain_pending() == ['0xa', '0xb']
    assert cache.drain_pending() == []


def test_seen_address_not_pending_again_until_evicted():
    cache = AddressCache()
    cache.observe('0xa')
    cache.drain_pending()
    cache.observe('0xa')
    assert cache.pending_count() == 0
    assert cache.touch_count('0xa') == 2


def test_requeue_marks_pending():
    cache = AddressCache()
    cache.observe('0xa')
    cache.drain_pending()
    cache.requeue(['0xa', '0xz'])
    assert cache.drain_pending() == ['0xa', '0xz']
    assert '0xz' in cache


def test_evict_keeps_most_touched_entries():
    cache = AddressCache()
    # 0x0 .. 0xa, touch count equal to index + 1 for even indexes, 1 otherwise
    for i in range(11):
        addr = hex(i)
        cache.observe(addr)
        for _ in range(i if i % 2 == 0 else 0):
            cache.observe(addr)
    evicted = cache.evict_if_over_capacity(10, 0.6)
    assert evicted == 5
    assert len(cache) == 6
    # even indexes 2..10 have the largest counts, ties of 1 go to insertion order
    kept = {hex(i) for i in (10, 8, 6, 4, 2)} | {'0x0'}
    assert {a for a in kept if a in cache} == kept


def test_evict_noop_under_capacity():
    cache = AddressCache()
    for i in range(10):
        cache.observe(hex(i))
    assert cache.evict_if_over_capacity(10, 0.6) == 0
    assert len(cache) == 10


def test_evict_ties_follow_insertion_order():
    cache = AddressCache()
    for i in range(5):
        cache.observe(hex(i))
    cache.evict_if_over_capacity(4, 0.5)
    assert [a for a in map(hex, range(5)) if a in cache] == ['0x0', '0x1']


def test_evict_keeps_pending_marks():
    cache = AddressCache()
    for i in range(5):
        cache.observe(hex(i))
    cache.evict_if_over_capacity(2, 0.5)
    assert len(cache) == 1
    assert cache.pending_count() == 5
