#tests/test_slots.py

"""Slot manager bounding the queue worker's concurrent jobs."""

import threading
from uuid import uuid4

import pytest

from paas_engine.executor.slots import Slot, SlotManager


class TestSlot:
    """Individual slot."""

    def test_slot_initialization(self):
        """Slot starts free."""
        slot = Slot(slot_id=0)
        assert slot.is_free()
        assert slot.job_id is None

    def test_bind_job(self):
        slot = Slot(slot_id=0)
        job_id = uuid4()

        slot.bind(job_id)

        assert not slot.is_free()
        assert slot.job_id == job_id

    def test_bind_occupied_slot_fails(self):
        slot = Slot(slot_id=0)
        slot.bind(uuid4())

        with pytest.raises(ValueError):
            slot.bind(uuid4())

    def test_release_slot(self):
        slot = Slot(slot_id=0)
        slot.bind(uuid4())

        slot.release()

        assert slot.is_free()
        assert slot.job_id is None


class TestSlotManager:
    """Slot pool."""

    def test_initialization(self):
        manager = SlotManager(max_slots=5)

        assert manager.total_slots() == 5
        assert manager.free_slots() == 5
        assert len(manager.active_slots()) == 0

    def test_zero_slots_rejected(self):
        with pytest.raises(ValueError):
            SlotManager(max_slots=0)

    def test_reserve_binds_job(self):
        manager = SlotManager(max_slots=3)
        job_id = uuid4()

        slot = manager.reserve(job_id)

        assert slot is not None
        assert slot.job_id == job_id
        assert manager.free_slots() == 2

    def test_reserve_when_all_occupied(self):
        manager = SlotManager(max_slots=2)
        manager.reserve(uuid4())
        manager.reserve(uuid4())

        assert manager.reserve(uuid4()) is None
        assert not manager.has_free_slot()

    def test_find_slot_by_job(self):
        manager = SlotManager(max_slots=3)
        job_id = uuid4()
        manager.reserve(job_id)

        found = manager.find_slot_by_job(job_id)

        assert found is not None
        assert found.job_id == job_id
        assert manager.find_slot_by_job(uuid4()) is None

    def test_release_frees_slot(self):
        manager = SlotManager(max_slots=1)
        job_id = uuid4()
        manager.reserve(job_id)

        assert manager.release(job_id)
        assert manager.has_free_slot()
        assert not manager.release(job_id)

    def test_active_job_ids(self):
        manager = SlotManager(max_slots=5)
        first, second = uuid4(), uuid4()
        manager.reserve(first)
        manager.reserve(second)

        assert sorted(manager.active_job_ids(), key=str) == sorted([first, second], key=str)
        assert manager.free_slots() == 3

    def test_concurrent_reserve_never_shares_a_slot(self):
        """Many threads reserving at once get at most max_slots slots."""
        manager = SlotManager(max_slots=4)
        reserved = []
        lock = threading.Lock()

        def worker():
            slot = manager.reserve(uuid4())
            if slot is not None:
                with lock:
                    reserved.append(slot.slot_id)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(reserved) == [0, 1, 2, 3]
