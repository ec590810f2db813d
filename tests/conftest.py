# tests/conftest.py
import pytest

from attackmap import CaptureEvent, EventStore


def make_event(i, address=None):
  return CaptureEvent(
    source_address=address or f"198.18.0.{i % 250}",
    latitude=float(i) / 10.0,
    longitude=-float(i) / 7.0,
    city=f"City{i}",
    country="US" if i % 2 else "",
    captured_at=1700000000000 + i,
  )


@pytest.fixture
def db_path(tmp_path):
  return str(tmp_path / "data" / "attacks.db")


@pytest.fixture
def store(db_path):
  s = EventStore(db_path=db_path)
  s.open()
  yield s
  s.close()
