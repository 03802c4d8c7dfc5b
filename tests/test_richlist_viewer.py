from decimal import Decimal
from pathlib import Path
import sys

root_dir = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(root_dir / 'tool'))

import richlist_viewer
from account_sqlite_store import AccountStore, open_db
from records import AccountType, AddressRecord


def _seed(db_path):
    conn = open_db(str(db_path))
    AccountStore(conn).write([
        AddressRecord('0xaa', AccountType.EXTERNALLY_OWNED, Decimal('2.5'), 10),
        AddressRecord('0xbb', AccountType.CONTRACT, Decimal('100'), 10),
        AddressRecord('0xcc', AccountType.UNKNOWN, Decimal('0'), 10),
        AddressRecord('0xdd', AccountType.EXTERNALLY_OWNED, Decimal('2.5'), 10),
    ])
    conn.close()


def test_iter_rich_list_orders_by_balance(tmp_path):
    db = tmp_path / 'r.db'
    _seed(db)
    records = list(richlist_viewer.iter_rich_list(str(db), limit=3))
    assert [r.address for r in records] == ['0xbb', '0xaa', '0xdd']
    assert records[0].type == AccountType.CONTRACT
    assert records[1].balance == Decimal('2.5')


def test_format_rows():
    out = richlist_viewer.format_rows([
        AddressRecord('0xbb', AccountType.CONTRACT, Decimal('100'), 1),
        AddressRecord('0xaa', AccountType.EXTERNALLY_OWNED, Decimal('2.5'), 1),
    ])
    lines = out.splitlines()
    assert lines[0].split() == ['Rank', 'Address', 'Type', 'Balance']
    assert lines[2].split() == ['1', '0xbb', 'contract', '100']
    assert lines[3].split() == ['2', '0xaa', 'address', '2.5']
    assert richlist_viewer.format_rows([]) == ''


def test_main_prints_table(tmp_path, monkeypatch, capsys):
    db = tmp_path / 'r.db'
    _seed(db)
    monkeypatch.setattr(sys, 'argv', ['richlist_viewer', str(db), '-n', '1'])
    richlist_viewer.main()
    out = capsys.readouterr().out
    assert '0xbb' in out
    assert '0xaa' not in out
