from datetime import datetime, timedelta, timezone

import pytest

from models import ConversionPayload
from storage import Storage


class FakeClock:
    def __init__(self, start=None):
        self.current = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, seconds=0, milliseconds=0):
        self.current += timedelta(seconds=seconds, milliseconds=milliseconds)


class CaptureProjector:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return True

    def kinds(self):
        return [e.kind for e in self.events]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture
def storage(db_path, clock):
    db = Storage(db_path, clock=clock)
    yield db
    try:
        db.close()
    except Exception:
        pass


@pytest.fixture
def make_payload(tmp_path):
    def _make(conversion_id, **overrides):
        values = dict(
            conversion_id=conversion_id,
            user_id="user-1",
            source_file_path=str(tmp_path / f"{conversion_id}.pdf"),
            output_file_path=str(tmp_path / "out" / f"{conversion_id}.docx"),
            original_filename=f"{conversion_id}.pdf",
        )
        values.update(overrides)
        return ConversionPayload(**values)

    return _make


@pytest.fixture
def projector():
    return CaptureProjector()
