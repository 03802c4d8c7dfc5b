from pathlib import Path
import sys
import threading

import pytest

root_dir = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(root_dir / 'tool'))

from chain_readers import ChainReadError, retry_read


class Flaky:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise ChainReadError('timeout')
        return value * 2


def test_retries_until_success():
    fn = Flaky(3)
    assert retry_read('double', fn, 21, retry_delay=0) == 42
    assert fn.calls == 4


def test_gives_up_after_max_retries():
    fn = Flaky(5)
    with pytest.raises(ChainReadError):
        retry_read('double', fn, 1, retry_delay=0, max_retries=2)
    assert fn.calls == 3


def test_stop_event_ends_retries():
    stop = threading.Event()
    stop.set()
    fn = Flaky(5)
    with pytest.raises(ChainReadError):
        retry_read('double', fn, 1, retry_delay=10, stop_event=stop)
    assert fn.calls == 1


def test_other_errors_propagate():
    def broken():
        raise KeyError('bad')

    with pytest.raises(KeyError):
        retry_read('broken', broken, retry_delay=0)
