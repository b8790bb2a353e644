import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from vending_relay.config import LOCK_WINDOW

logger = logging.getLogger(__name__)


@dataclass
class MachineSlot:
    locked: bool = False
    request_time: Any = None
    release: Optional[asyncio.TimerHandle] = None
    poller: Any = None

    @property
    def idle(self) -> bool:
        return not self.locked and self.poller is None


class MachineTable:
    """In-flight state per machine: the dedup lock and the active poller.

    A lock is released only by its timer, ``lock_window`` seconds after it was
    taken, whatever happened to the transaction in between.
    """

    def __init__(self, lock_window: float = LOCK_WINDOW):
        self.lock_window = lock_window
        self._slots: Dict[str, MachineSlot] = {}
        self._release_listeners: List[Callable[[str], None]] = []

    def _slot(self, machine: str) -> MachineSlot:
        return self._slots.setdefault(machine, MachineSlot())

    def _discard_if_idle(self, machine: str):
        slot = self._slots.get(machine)
        if slot is not None and slot.idle:
            del self._slots[machine]

    def add_release_listener(self, listener: Callable[[str], None]):
        self._release_listeners.append(listener)

    def is_locked(self, machine: str) -> bool:
        slot = self._slots.get(machine)
        return slot is not None and slot.locked

    def locked_request(self, machine: str):
        slot = self._slots.get(machine)
        return slot.request_time if slot is not None and slot.locked else None

    def try_lock(self, machine: str, request_time) -> bool:
        slot = self._slot(machine)
        if slot.locked:
            return False
        slot.locked = True
        slot.request_time = request_time
        slot.release = asyncio.get_running_loop().call_later(
            self.lock_window, self.unlock, machine
        )
        logger.debug(f"Locked {machine} for request {request_time}")
        return True

    def unlock(self, machine: str):
        slot = self._slots.get(machine)
        if slot is None or not slot.locked:
            return
        if slot.release is not None:
            slot.release.cancel()
        slot.locked = False
        slot.request_time = None
        slot.release = None
        self._discard_if_idle(machine)
        logger.debug(f"Released lock for {machine}")
        for listener in self._release_listeners:
            listener(machine)

    def poller(self, machine: str):
        slot = self._slots.get(machine)
        return slot.poller if slot is not None else None

    def start_poller(self, machine: str, poller) -> bool:
        slot = self._slot(machine)
        if slot.poller is not None:
            return False
        slot.poller = poller
        return True

    def stop_poller(self, machine: str, poller):
        slot = self._slots.get(machine)
        if slot is not None and slot.poller is poller:
            slot.poller = None
            self._discard_if_idle(machine)

    def active_pollers(self) -> List[str]:
        return [machine for machine, slot in self._slots.items() if slot.poller is not None]

    def locked_machines(self) -> List[str]:
        return [machine for machine, slot in self._slots.items() if slot.locked]

    def close(self):
        for slot in self._slots.values():
            if slot.release is not None:
                slot.release.cancel()
            if slot.poller is not None:
                slot.poller.cancel()
        self._slots.clear()
