from __future__ import annotations

import json

import pytest

from consolelog_bridge.errors import PersistenceError
from consolelog_bridge.persistence import SessionStore, Snapshot


def test_missing_and_empty_files_load_as_none(tmp_path):
    store = SessionStore(str(tmp_path / "queue.json"))
    assert store.load() is None
    (tmp_path / "queue.json").write_text("  ")
    assert store.load() is None


def test_save_load_clear(tmp_path):
    path = tmp_path / "nested" / "queue.json"
    store = SessionStore(str(path))
    snap = Snapshot(queue=[{"id": 1}], pending=[{"id": 2, "message": {}, "retries": 1}])
    store.save(snap)
    assert json.loads(path.read_text()) == {"queue": [{"id": 1}], "pending": [{"id": 2, "message": {}, "retries": 1}]}
    assert store.load() == snap
    assert not (tmp_path / "nested" / "queue.json.tmp").exists()
    store.clear()
    assert not path.exists()
    # clearing twice is fine
    store.clear()


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"queue": {"a": 1}, "pending": []}'])
def test_corrupt_snapshot_raises(tmp_path, content):
    path = tmp_path / "queue.json"
    path.write_text(content)
    with pytest.raises(PersistenceError):
        SessionStore(str(path)).load()


def test_unwritable_location_raises(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    store = SessionStore(str(blocker / "queue.json"))
    with pytest.raises(PersistenceError):
        store.save(Snapshot())
