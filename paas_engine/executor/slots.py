#paas_engine/executor/slots.py

"""Slot manager for bounding concurrent jobs."""

import threading
from typing import List, Optional
from uuid import UUID


class Slot:
    """A single job slot."""

    def __init__(self, slot_id: int):
        self.slot_id = slot_id
        self.job_id: Optional[UUID] = None

    def is_free(self) -> bool:
        return self.job_id is None

    def bind(self, job_id: UUID) -> None:
        if not self.is_free():
            raise ValueError(f"Slot {self.slot_id} already occupied")
        self.job_id = job_id

    def release(self) -> None:
        self.job_id = None

    def __repr__(self) -> str:
        status = "free" if self.is_free() else f"occupied({self.job_id})"
        return f"<Slot(id={self.slot_id}, {status})>"


class SlotManager:
    """
    Fixed pool of slots shared between a poll loop and job threads.

    `reserve` binds atomically, so two threads never get the same slot.
    """

    def __init__(self, max_slots: int):
        if max_slots < 1:
            raise ValueError("max_slots must be at least 1")

        self._slots = [Slot(i) for i in range(max_slots)]
        self._lock = threading.Lock()

    def reserve(self, job_id: UUID) -> Optional[Slot]:
        """Bind the job to a free slot. None when all slots are busy."""
        with self._lock:
            for slot in self._slots:
                if slot.is_free():
                    slot.bind(job_id)
                    return slot
            return None

    def release(self, job_id: UUID) -> bool:
        with self._lock:
            for slot in self._slots:
                if slot.job_id == job_id:
                    slot.release()
                    return True
            return False

    def has_free_slot(self) -> bool:
        return self.free_slots() > 0

    def active_slots(self) -> List[Slot]:
        with self._lock:
            return [s for s in self._slots if not s.is_free()]

    def active_job_ids(self) -> List[UUID]:
        return [s.job_id for s in self.active_slots()]

    def find_slot_by_job(self, job_id: UUID) -> Optional[Slot]:
        with self._lock:
            for slot in self._slots:
                if slot.job_id == job_id:
                    return slot
            return None

    def total_slots(self) -> int:
        return len(self._slots)

    def free_slots(self) -> int:
        with self._lock:
            return sum(1 for s in self._slots if s.is_free())

    def __repr__(self) -> str:
        return (
            f"<SlotManager(total={self.total_slots()}, "
            f"free={self.free_slots()})>"
        )
