import asyncio
import enum
import logging
from typing import Callable, Optional

from vending_relay.clock import Clock, format_req_time
from vending_relay.config import POLL_DEADLINE, POLL_INITIAL_DELAY, POLL_INTERVAL, Settings
from vending_relay.errors import GatewayError, StoreError
from vending_relay.gateway import PaywayGateway
from vending_relay.schemas import EXPIRED, PaymentStatus, is_approved, reply_section
from vending_relay.signing import build_check_payload
from vending_relay.store import DataTree

logger = logging.getLogger(__name__)


class PollOutcome(enum.Enum):
    APPROVED = "approved"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class StatusPoller:
    """Repeating status check bound to one transaction.

    Checks start ``initial_delay`` seconds after start and repeat every
    ``interval`` seconds until the gateway reports approval or ``deadline``
    seconds have elapsed. Each check is cut off when the deadline arrives, so
    expiry is written at the deadline. Failed or malformed checks are logged
    and do not stop the loop.
    """

    def __init__(
        self,
        machine: str,
        tran_id: str,
        *,
        settings: Settings,
        gateway: PaywayGateway,
        tree: DataTree,
        clock: Optional[Clock] = None,
        interval: float = POLL_INTERVAL,
        initial_delay: float = POLL_INITIAL_DELAY,
        deadline: float = POLL_DEADLINE,
        on_finish: Optional[Callable[["StatusPoller"], None]] = None,
    ):
        self.machine = machine
        self.tran_id = tran_id
        self.settings = settings
        self.gateway = gateway
        self.tree = tree
        self.clock = clock or Clock()
        self.interval = interval
        self.initial_delay = initial_delay
        self.deadline = deadline
        self.on_finish = on_finish
        self.outcome: Optional[PollOutcome] = None
        self.task: Optional[asyncio.Task] = None
        self._finished = False

    @property
    def status_path(self) -> str:
        return f"{self.machine}/status"

    def start(self) -> asyncio.Task:
        self.task = asyncio.get_running_loop().create_task(
            self.run(), name=f"poll-{self.machine}-{self.tran_id}"
        )
        return self.task

    def cancel(self):
        if self.task is not None and not self.task.done():
            self.task.cancel()

    def _finish(self):
        if not self._finished:
            self._finished = True
            if self.on_finish is not None:
                self.on_finish(self)

    async def run(self) -> PollOutcome:
        started = self.clock.monotonic()
        try:
            await self.clock.sleep(self.initial_delay)
            while True:
                remaining = self.deadline - (self.clock.monotonic() - started)
                if remaining <= 0:
                    await self._expire()
                    return self.outcome
                if await self._tick(remaining):
                    return self.outcome
                # Never sleep past the deadline
                remaining = self.deadline - (self.clock.monotonic() - started)
                await self.clock.sleep(min(self.interval, max(remaining, 0)))
        except asyncio.CancelledError:
            self.outcome = PollOutcome.CANCELLED
            raise
        finally:
            self._finish()

    async def _expire(self):
        self.outcome = PollOutcome.EXPIRED
        self._finish()
        record = PaymentStatus(
            payment_status=EXPIRED, tran_id=self.tran_id, timestamp=format_req_time()
        )
        logger.info(f"Transaction {self.tran_id} for {self.machine} expired")
        try:
            await self.tree.set(self.status_path, record.to_tree())
        except StoreError as e:
            logger.error(f"Could not record expiry for {self.machine}: {e}")

    async def _tick(self, timeout: float) -> bool:
        payload = build_check_payload(
            api_key=self.settings.api_key,
            merchant_id=self.settings.merchant_id,
            tran_id=self.tran_id,
            req_time=format_req_time(),
        )
        try:
            reply = await self.clock.wait_for(self.gateway.check_transaction(payload), timeout)
        except GatewayError as e:
            logger.warning(f"Status check for {self.tran_id} ({self.machine}) failed: {e.detail}")
            return False
        except asyncio.TimeoutError:
            logger.warning(f"Status check for {self.tran_id} ({self.machine}) timed out")
            return False

        record = PaymentStatus.from_check_reply(reply, self.tran_id, format_req_time())
        approved = is_approved(reply)
        if approved:
            self.outcome = PollOutcome.APPROVED
            self._finish()
            record.payment_amount = reply_section(reply, "data").get("payment_amount")
        logger.debug(f"{self.machine} {self.tran_id}: {record.payment_status}")

        try:
            await self.tree.set(self.status_path, record.to_tree())
        except StoreError as e:
            logger.error(f"Could not record status for {self.machine}: {e}")

        if approved:
            logger.info(f"Payment approved for {self.machine} ({self.tran_id})")
        return approved
