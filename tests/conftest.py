"""Shared fixtures: import path for the skill script, Arrow batches, fake streams."""

import sys
import threading
from pathlib import Path

import pyarrow as pa
import pytest

SCRIPT_DIR = Path(__file__).parent.parent / "skills" / "databricks-batches" / "scripts"
sys.path.insert(0, str(SCRIPT_DIR))

from query_databricks import ArrowBatchStream  # noqa: E402


class FakeClock:
    """Manually advanced clock for Deadline and elapsed-time tests."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ListBatchStream(ArrowBatchStream):
    """Serves batches from a list and records every pull and release."""

    def __init__(self, batches, fail_at=None, gate=None):
        super().__init__()
        self._batches = list(batches)
        self._fail_at = fail_at
        self._gate = gate
        self.events = []
        self.closed = False

    def _fetch(self):
        index = len([e for e in self.events if e[0] == "fetch"])
        self.events.append(("fetch", index))
        if self._gate is not None:
            self._gate.wait(timeout=5)
        if index == self._fail_at:
            raise ConnectionError("connection reset by peer")
        if index >= len(self._batches):
            return None
        batch = self._batches[index]
        if index == len(self._batches) - 1:
            self._exhausted = True
        return batch

    def release(self, batch):
        super().release(batch)
        self.events.append(("release", batch.num_rows))

    def close(self):
        super().close()
        self.closed = True


def make_batch(**columns) -> pa.RecordBatch:
    """Build a record batch from name=pyarrow-array keyword arguments."""
    return pa.RecordBatch.from_arrays(list(columns.values()), names=list(columns.keys()))


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def trips_batch():
    return make_batch(
        id=pa.array([1, 2], type=pa.int64()),
        fare=pa.array([12.5, None], type=pa.float64()),
        pickup=pa.array(["A", "B"], type=pa.string()),
    )


@pytest.fixture
def gate():
    event = threading.Event()
    yield event
    event.set()
