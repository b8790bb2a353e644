import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from vending_relay.orchestrator import TransactionOrchestrator
from vending_relay.schemas import VendRequest
from vending_relay.store import DataTree, Subscription

logger = logging.getLogger(__name__)


class TreeWatcher:
    """Reconciles full-tree snapshots against what has already been dispatched.

    A machine is dispatched when its ``request.time`` differs from both the
    recorded ``response.requestTime`` and the last time dispatched for it,
    and the machine is not locked.
    """

    def __init__(self, tree: DataTree, orchestrator: TransactionOrchestrator):
        self.tree = tree
        self.orchestrator = orchestrator
        self.subscription: Optional[Subscription] = None
        self._dispatched: Dict[str, Any] = {}
        self._latest: Dict[str, Any] = {}
        orchestrator.table.add_release_listener(self._on_release)

    def start(self):
        self.subscription = self.tree.subscribe(self.on_snapshot)
        logger.info("Watching for new transactions")

    async def close(self):
        if self.subscription is not None:
            await self.subscription.close()
            self.subscription = None
            logger.info("Stopped watching for transactions")

    def on_snapshot(self, snapshot):
        self._latest = snapshot if isinstance(snapshot, dict) else {}
        for machine, entry in self._latest.items():
            self.reconcile(machine, entry)

    def _on_release(self, machine: str):
        entry = self._latest.get(machine)
        if entry is not None:
            self.reconcile(machine, entry)

    def reconcile(self, machine: str, entry) -> bool:
        if not isinstance(entry, dict) or not entry.get("request"):
            return False
        raw = entry["request"]
        if not isinstance(raw, dict) or raw.get("time") is None:
            logger.warning(f"Ignoring request for {machine} without a time")
            return False

        request_time = raw["time"]
        if machine in self._dispatched and self._dispatched[machine] == request_time:
            return False

        response = entry.get("response")
        if isinstance(response, dict) and response.get("requestTime") == request_time:
            self._dispatched[machine] = request_time
            return False

        if self.orchestrator.table.is_locked(machine):
            return False

        try:
            request = VendRequest.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed request for {machine}: {e}")
            self._dispatched[machine] = request_time
            return False

        if self.orchestrator.submit(machine, request) is None:
            return False
        self._dispatched[machine] = request_time
        return True
