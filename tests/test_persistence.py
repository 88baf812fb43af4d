"""
Test Pending-Action Store

Run with: pytest tests/test_persistence.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import threading

import pytest

from aers.contracts import FileMetadata, PendingAction
from aers.persistence import (
    PendingActionStore,
    pending_action_from_json,
    pending_action_to_json,
)


@pytest.fixture
def store(tmp_path):
    return PendingActionStore(str(tmp_path / "pending"))


def test_store_then_restore(store):
    action = PendingAction(
        description="nausea",
        files=(FileMetadata(name="label.png", size=1200, type="image/png"),),
    )
    store.store(action)

    assert store.peek() == action
    assert store.restore_and_clear() == action
    assert store.restore_and_clear() is None, "Second restore must find nothing"
    assert store.peek() is None

    print("✓ Store/restore test passed")


def test_restore_empty_slot(store):
    assert store.restore_and_clear() is None
    print("✓ Empty slot test passed")


def test_directory_created_on_first_store(tmp_path):
    base_dir = tmp_path / "pending" / "client"
    store = PendingActionStore(str(base_dir))

    assert store.peek() is None
    assert store.restore_and_clear() is None
    store.clear()
    assert not base_dir.exists()

    store.store(PendingAction(description="rash"))
    assert base_dir.is_dir()
    assert store.peek() == PendingAction(description="rash")

    print("✓ Lazy directory test passed")


def test_store_overwrites(store):
    store.store(PendingAction(description="rash"))
    store.store(PendingAction(description="headache"))

    assert store.restore_and_clear() == PendingAction(description="headache")
    print("✓ Overwrite test passed")


def test_clear(store):
    store.store(PendingAction(description="rash"))
    store.clear()
    store.clear()

    assert store.restore_and_clear() is None
    print("✓ Clear test passed")


def test_corrupt_slot_reported_absent(store):
    store.base_dir.mkdir(parents=True)
    store.slot_path.write_text("{not json")

    assert store.peek() is None
    assert not store.slot_path.exists(), "Corrupt slot is discarded"

    store.slot_path.write_text('{"files": []}')
    assert store.restore_and_clear() is None

    print("✓ Corrupt slot test passed")


def test_survives_new_store_instance(tmp_path):
    """A new process (new store object) sees what the old one wrote"""
    PendingActionStore(str(tmp_path)).store(PendingAction(description="nausea"))

    assert PendingActionStore(str(tmp_path)).restore_and_clear() == PendingAction(description="nausea")
    print("✓ Cross-instance test passed")


def test_concurrent_restores_consume_once(tmp_path):
    """Two readers of the same slot: exactly one gets the action"""
    PendingActionStore(str(tmp_path)).store(PendingAction(description="nausea"))
    readers = [PendingActionStore(str(tmp_path)) for _ in range(8)]
    results = []
    results_lock = threading.Lock()

    def restore(reader):
        action = reader.restore_and_clear()
        with results_lock:
            results.append(action)

    threads = [threading.Thread(target=restore, args=(reader,)) for reader in readers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert [r for r in results if r is not None] == [PendingAction(description="nausea")]
    print("✓ Single-consumer test passed")


def test_json_format():
    action = PendingAction(description="nausea", files=(FileMetadata("a.pdf", 10, "application/pdf"),))

    data = pending_action_to_json(action)
    assert data == {
        'description': 'nausea',
        'files': [{'name': 'a.pdf', 'size': 10, 'type': 'application/pdf'}],
    }
    assert pending_action_from_json(data) == action
    assert pending_action_to_json(PendingAction(description="x")) == {'description': 'x'}

    with pytest.raises(ValueError):
        pending_action_from_json({'description': 'x', 'files': 'a.pdf'})
    with pytest.raises(ValueError):
        pending_action_from_json(['nausea'])

    print("✓ JSON format test passed")
