import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from vending_relay.gateway import PaywayGateway
from vending_relay.machines import MachineTable
from vending_relay.orchestrator import TransactionOrchestrator
from vending_relay.watcher import TreeWatcher


def request(time="T1", amount=500, location="A1"):
    return {"time": time, "amount": amount, "location": location, "items": []}


@pytest.fixture
def orchestrator():
    orchestrator = MagicMock(spec=TransactionOrchestrator)
    orchestrator.table = MachineTable()
    orchestrator.submit.return_value = MagicMock()
    return orchestrator


def test_empty_or_missing_tree_is_a_no_op(tree, orchestrator):
    watcher = TreeWatcher(tree, orchestrator)

    watcher.on_snapshot(None)
    watcher.on_snapshot({})
    watcher.on_snapshot({"M1": {"status": {"payment_status": "expired"}}})
    watcher.on_snapshot({"M2": "garbage"})

    orchestrator.submit.assert_not_called()


def test_new_request_is_dispatched_once(tree, orchestrator):
    watcher = TreeWatcher(tree, orchestrator)
    snapshot = {"M1": {"request": request()}}

    watcher.on_snapshot(snapshot)
    watcher.on_snapshot(snapshot)

    orchestrator.submit.assert_called_once()
    machine, vend_request = orchestrator.submit.call_args.args
    assert machine == "M1"
    assert vend_request.time == "T1"
    assert vend_request.amount == 500


def test_answered_request_is_skipped(tree, orchestrator):
    watcher = TreeWatcher(tree, orchestrator)

    watcher.on_snapshot(
        {"M1": {"request": request(), "response": {"requestTime": "T1", "status": "pending"}}}
    )

    orchestrator.submit.assert_not_called()


def test_changed_request_is_dispatched(tree, orchestrator):
    watcher = TreeWatcher(tree, orchestrator)

    watcher.on_snapshot({"M1": {"request": request("T1")}})
    watcher.on_snapshot(
        {"M1": {"request": request("T2"), "response": {"requestTime": "T1"}}}
    )

    assert [c.args[1].time for c in orchestrator.submit.call_args_list] == ["T1", "T2"]


def test_only_changed_machines_are_dispatched(tree, orchestrator):
    watcher = TreeWatcher(tree, orchestrator)

    watcher.on_snapshot({"M1": {"request": request()}})
    watcher.on_snapshot({"M1": {"request": request()}, "M2": {"request": request()}})

    assert [c.args[0] for c in orchestrator.submit.call_args_list] == ["M1", "M2"]


def test_malformed_requests_are_skipped(tree, orchestrator):
    watcher = TreeWatcher(tree, orchestrator)

    watcher.on_snapshot({"M1": {"request": {"amount": 500}}})
    watcher.on_snapshot({"M2": {"request": {"time": "T1"}}})
    watcher.on_snapshot({"M2": {"request": {"time": "T1"}}})

    orchestrator.submit.assert_not_called()


@pytest.mark.asyncio
async def test_locked_machine_is_reconciled_on_release(tree, orchestrator):
    watcher = TreeWatcher(tree, orchestrator)
    orchestrator.table.try_lock("M1", "T0")

    watcher.on_snapshot({"M1": {"request": request("T1"), "response": {"requestTime": "T0"}}})
    orchestrator.submit.assert_not_called()

    orchestrator.table.unlock("M1")
    orchestrator.submit.assert_called_once()
    assert orchestrator.submit.call_args.args[0] == "M1"


@pytest.mark.asyncio
async def test_subscription_lifecycle(tree, orchestrator):
    watcher = TreeWatcher(tree, orchestrator)

    watcher.start()
    tree.emit({"M1": {"request": request()}})
    await watcher.close()
    tree.emit({"M2": {"request": request()}})

    orchestrator.submit.assert_called_once()
    assert tree.callbacks == []


@pytest.mark.asyncio
async def test_repeated_notifications_issue_one_charge(settings, tree):
    gateway = MagicMock(spec=PaywayGateway)
    gateway.create_charge = AsyncMock(return_value={"qrString": "X", "amount": 500})
    gateway.check_transaction = AsyncMock(return_value={"status": {"code": "01"}})
    orchestrator = TransactionOrchestrator(
        settings, gateway, tree, table=MachineTable(), poll_initial_delay=3600
    )
    watcher = TreeWatcher(tree, orchestrator)
    watcher.start()

    snapshot = {"M1": {"request": request()}}
    tree.emit(snapshot)
    tree.emit(snapshot)
    await asyncio.sleep(0.01)
    tree.emit({"M1": {"request": request(), "response": tree.data["M1/response"]}})
    await asyncio.sleep(0.01)

    assert gateway.create_charge.await_count == 1
    assert tree.data["M1/response"]["requestTime"] == "T1"
    await watcher.close()
    await orchestrator.close()
