import asyncio
import logging
from typing import Optional, Set

from vending_relay.clock import Clock, format_req_time, make_tran_id
from vending_relay.config import POLL_DEADLINE, POLL_INITIAL_DELAY, POLL_INTERVAL, Settings
from vending_relay.errors import GatewayError, StoreError
from vending_relay.gateway import PaywayGateway
from vending_relay.machines import MachineTable
from vending_relay.poller import StatusPoller
from vending_relay.schemas import ERROR, PENDING, ChargeResponse, VendRequest
from vending_relay.signing import build_charge_payload, format_amount
from vending_relay.store import DataTree

logger = logging.getLogger(__name__)


class TransactionOrchestrator:
    """Runs the create-charge then poll cycle for each machine request."""

    def __init__(
        self,
        settings: Settings,
        gateway: PaywayGateway,
        tree: DataTree,
        table: Optional[MachineTable] = None,
        clock: Optional[Clock] = None,
        poll_interval: float = POLL_INTERVAL,
        poll_initial_delay: float = POLL_INITIAL_DELAY,
        poll_deadline: float = POLL_DEADLINE,
    ):
        self.settings = settings
        self.gateway = gateway
        self.tree = tree
        self.table = table or MachineTable()
        self.clock = clock or Clock()
        self.poll_interval = poll_interval
        self.poll_initial_delay = poll_initial_delay
        self.poll_deadline = poll_deadline
        self._tasks: Set[asyncio.Task] = set()

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Task {task.get_name()} failed: {exc!r}", exc_info=exc)

    def submit(self, machine: str, request: VendRequest) -> Optional[asyncio.Task]:
        """Lock the machine and start a transaction, or do nothing if it is locked."""
        if not self.table.try_lock(machine, request.time):
            logger.debug(f"{machine} is busy, skipping request {request.time}")
            return None
        task = asyncio.get_running_loop().create_task(
            self.initiate(machine, request), name=f"initiate-{machine}"
        )
        return self._track(task)

    async def initiate(self, machine: str, request: VendRequest) -> Optional[str]:
        """Create the charge for ``request`` and hand the transaction to a poller.

        Returns the transaction id, or None when the charge could not be created.
        """
        amount = format_amount(request.amount)
        location = request.location
        req_time = format_req_time()
        tran_id = make_tran_id(req_time)

        logger.info(f"New transaction for {machine}: {location} value {amount} KHR")
        payload = build_charge_payload(
            api_key=self.settings.api_key,
            merchant_id=self.settings.merchant_id,
            tran_id=tran_id,
            req_time=req_time,
            amount=amount,
            items=request.items,
            callback_url=self.settings.callback_url(machine),
            return_params=f"Machine: {machine},Amount: {amount},Slot_Number: {location}",
        )
        logger.info(f"Sending {tran_id} to ABA PayWay for {machine}...")

        try:
            await self.tree.delete(f"{machine}/callback")
            await self.tree.delete(f"{machine}/response")
            await self.tree.delete(f"{machine}/status")

            reply = await self.gateway.create_charge(payload)

            response = ChargeResponse(
                qrString=reply["qrString"],
                amount=reply.get("amount"),
                timestamp=format_req_time(),
                requestTime=request.time,
                status=PENDING,
            )
            await self.tree.set(f"{machine}/response", response.to_tree())
        except (GatewayError, StoreError) as e:
            detail = e.detail if isinstance(e, GatewayError) else str(e)
            logger.error(f"ABA Pay error for {machine}: {detail}")
            failure = ChargeResponse(
                error=detail,
                timestamp=format_req_time(),
                requestTime=request.time,
                status=ERROR,
            )
            await self.tree.set(f"{machine}/response", failure.to_tree())
            return None

        logger.info(f"ABA payment {tran_id} created for {machine}")
        self.start_polling(machine, tran_id)
        return tran_id

    def start_polling(self, machine: str, tran_id: str) -> Optional[StatusPoller]:
        poller = StatusPoller(
            machine,
            tran_id,
            settings=self.settings,
            gateway=self.gateway,
            tree=self.tree,
            clock=self.clock,
            interval=self.poll_interval,
            initial_delay=self.poll_initial_delay,
            deadline=self.poll_deadline,
            on_finish=lambda p: self.table.stop_poller(machine, p),
        )
        if not self.table.start_poller(machine, poller):
            logger.info(f"{machine} already has an active poller, not polling {tran_id}")
            return None
        self._track(poller.start())
        return poller

    async def close(self):
        self.table.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
