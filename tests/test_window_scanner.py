from pathlib import Path
import sys

root_dir = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(root_dir / 'tool'))

from chain_readers import BlockHeader, ChainReader, TransactionRef
from records import ScanWindow
from window_scanner import WindowScanner


class DummyReader(ChainReader):
    def __init__(self, txs, blocks):
        self.txs = txs
        self.blocks = blocks
        self.calls = []

    def get_transactions_in_range(self, from_block, to_block):
        self.calls.append(('txs', from_block, to_block))
        return [t for t in self.txs if from_block <= t.block_number < to_block]

    def get_blocks_in_range(self, from_block, to_block):
        self.calls.append(('blocks', from_block, to_block))
        return [b for b in self.blocks if from_block <= b.number < to_block]


def test_window_collects_senders_receivers_and_miners():
    reader = DummyReader(
        [
            TransactionRef('A', 'B', 1200),
            TransactionRef('B', 'C', 1400),
        ],
        [BlockHeader(number=1300, miner='D', timestamp=0)],
    )
    found = WindowScanner(reader).addresses_in_window(ScanWindow(1000, 1500))
    assert set(found) == {'0xa', '0xb', '0xc', '0xd'}
    assert len(found) == 4


def test_contract_creation_has_no_receiver():
    reader = DummyReader([TransactionRef('0xAA', None, 5)], [])
    found = WindowScanner(reader).addresses_in_window(ScanWindow(0, 10))
    assert found == ['0xaa']


def test_window_bounds_are_half_open():
    reader = DummyReader(
        [TransactionRef('0x1', '0x2', 10), TransactionRef('0x3', '0x4', 20)],
        [BlockHeader(number=20, miner='0x5', timestamp=0)],
    )
    found = WindowScanner(reader).addresses_in_window(ScanWindow(10, 20))
    assert found == ['0x1', '0x2']


def test_empty_window_reads_nothing():
    reader = DummyReader([], [])
    assert WindowScanner(reader).addresses_in_window(ScanWindow(7, 7)) == []
    assert reader.calls == []
