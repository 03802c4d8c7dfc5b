from pathlib import Path
import sqlite3
import sys

import pytest

root_dir = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(root_dir / 'tool'))

import block_stats
from account_sqlite_store import BlockStatStore, open_db
from block_stats import BlockStatsCollector, parse_rescan, round_interval
from chain_readers import BlockHeader, ChainReadError, ChainReader


class DummyReader(ChainReader):
    def __init__(self, head, blocks=None, missing=(), failures=0):
        self.head = head
        self.blocks = blocks
        self.missing = set(missing)
        self.failures = failures
        self.reads = []

    def get_chain_head(self):
        return self.head

    def get_blocks_in_range(self, from_block, to_block):
        if self.failures:
            self.failures -= 1
            raise ChainReadError('timeout')
        self.reads.append(from_block)
        out = []
        for n in range(from_block, to_block):
            if n in self.missing:
                continue
            if self.blocks is not None:
                if n in self.blocks:
                    out.append(self.blocks[n])
                continue
            out.append(BlockHeader(number=n, miner='0xm', timestamp=10 * n, tx_count=n % 4))
        return out


def _collector(tmp_path, reader, **kwargs):
    conn = open_db(str(tmp_path / 's.db'))
    store = BlockStatStore(conn)
    return BlockStatsCollector(reader, store, retry_delay=0, **kwargs), store


def test_block_time_uses_next_sample(tmp_path):
    reader = DummyReader(200, blocks={
        100: BlockHeader(number=100, miner='0xa', timestamp=1000),
        200: BlockHeader(number=200, miner='0xb', timestamp=1100),
    })
    collector, store = _collector(tmp_path, reader)
    assert collector.collect(200, 0, 100) == 1
    stat = store.get(100)
    assert stat.block_time == 1.0
    assert stat.miner == '0xa'
    assert not store.exists(200)


def test_tail_mode_stops_at_existing_row(tmp_path):
    reader = DummyReader(50)
    collector, store = _collector(tmp_path, reader)
    assert collector.collect(50, 0, 10) == 4
    assert [n for n in (40, 30, 20, 10) if store.exists(n)] == [40, 30, 20, 10]

    reader.head = 70
    reader.reads = []
    assert collector.collect(70, 0, 10) == 2
    # block 40 was read, found in the store and ended the walk
    assert reader.reads == [70, 60, 50, 40]


def test_rescan_rewrites_existing_rows(tmp_path):
    reader = DummyReader(30)
    collector, store = _collector(tmp_path, reader)
    collector.collect(30, 0, 10)
    stat = store.get(10)
    stat.block_time = 99.0
    store.upsert(stat)
    assert collector.collect(30, 0, 10, rescan=True) == 2
    assert store.get(10).block_time == 10.0


def test_null_block_is_skipped(tmp_path):
    reader = DummyReader(40, missing={30})
    collector, store = _collector(tmp_path, reader)
    collector.collect(40, 0, 10)
    assert not store.exists(30)
    assert store.get(20).block_time == 10.0


def test_transient_errors_are_retried(tmp_path):
    reader = DummyReader(20, failures=2)
    collector, store = _collector(tmp_path, reader)
    assert collector.collect(20, 0, 10) == 1
    assert store.exists(10)


def test_update_stats_aligns_head(tmp_path):
    reader = DummyReader(1234)
    collector, store = _collector(tmp_path, reader)
    assert collector.update_stats(3, 100) == 2
    assert reader.reads == [1200, 1100, 1000]
    assert store.exists(1100) and store.exists(1000)


def test_round_interval():
    assert round_interval(1500) == 1000
    assert round_interval(100) == 100
    assert round_interval(7) == 1
    assert round_interval(0) == 1


def test_parse_rescan():
    assert parse_rescan('1500:20') == (1000, 20)
    assert parse_rescan('10:') == (10, 1000)
    assert parse_rescan('bogus') == (100, 1000)
    with pytest.raises(ValueError):
        parse_rescan('x:y')


def test_invalid_interval(tmp_path):
    collector, _ = _collector(tmp_path, DummyReader(10))
    with pytest.raises(ValueError):
        collector.collect(10, 0, 0)


def _config(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text('{"nodeAddr": "localhost", "port": 8545}')
    return path


def test_main_rescan_runs_once(tmp_path, monkeypatch):
    reader = DummyReader(1000)
    monkeypatch.setattr(block_stats, 'RPCChainReader', lambda url, timeout=None: reader)
    monkeypatch.setenv('RESCAN', '100:3')
    db = tmp_path / 'out.db'
    code = block_stats.main(['--config', str(_config(tmp_path)), '--db', str(db)])
    assert code == 0
    conn = sqlite3.connect(db)
    numbers = [r[0] for r in conn.execute('SELECT number FROM block_stats ORDER BY number')]
    conn.close()
    assert numbers == [800, 900]


def test_main_tail_single_round(tmp_path, monkeypatch):
    reader = DummyReader(500)
    monkeypatch.setattr(block_stats, 'RPCChainReader', lambda url, timeout=None: reader)
    monkeypatch.delenv('RESCAN', raising=False)
    db = tmp_path / 'out.db'
    code = block_stats.main([
        '--config', str(_config(tmp_path)), '--db', str(db),
        '--range', '2', '--interval', '100', '--max-rounds', '1',
    ])
    assert code == 0
    assert reader.reads == [500, 400]


def test_main_db_error_exits_9(tmp_path, monkeypatch):
    reader = DummyReader(500)
    monkeypatch.setattr(block_stats, 'RPCChainReader', lambda url, timeout=None: reader)
    monkeypatch.setenv('RESCAN', '100:3')

    def broken_insert(self, stat):
        raise sqlite3.OperationalError('database is locked')

    monkeypatch.setattr(BlockStatStore, 'insert', broken_insert)
    code = block_stats.main(['--config', str(_config(tmp_path)), '--db', str(tmp_path / 'o.db')])
    assert code == block_stats.EXIT_ABORTED
