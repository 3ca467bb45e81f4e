"""
Concurrent writers against the same slot, request or refund.

These run only against PostgreSQL (DATABASE_URL), where SELECT ... FOR
UPDATE actually serializes the units of work.  SQLite ignores row locks.

Expected Behavior:
- Concurrent buyer refund requests on one slot: exactly one is created,
  the rest are rejected as conflicting.
- Concurrent approvals of one refund: money moves exactly once.
- Concurrent purchases of one request: exactly one slot.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from threading import Barrier

import pytest

from guarantee_kernel.db.engine import is_postgres, session_scope
from guarantee_kernel.domain.dtos import TransactionType
from guarantee_kernel.exceptions import (
    ConflictingRefundRequestError,
    InvalidTransitionError,
)
from guarantee_kernel.selectors.guarantee_selector import GuaranteeSelector
from guarantee_services.ledger import SqlLedger

pytestmark = pytest.mark.postgres

WORKERS = 4


@pytest.fixture(autouse=True)
def _require_postgres(db_engine):
    if not is_postgres():
        pytest.skip("row locking needs PostgreSQL (set DATABASE_URL)")


def _race(fn):
    """Run ``fn`` on WORKERS threads released together; collect outcomes."""
    barrier = Barrier(WORKERS)

    def worker():
        barrier.wait()
        try:
            return ("ok", fn())
        except Exception as exc:
            return ("error", exc)

    with ThreadPoolExecutor(max_workers=WORKERS) as pool:
        futures = [pool.submit(worker) for _ in range(WORKERS)]
        return [f.result(timeout=30) for f in futures]


class TestConcurrentRefunds:

    def test_one_open_refund_per_slot(self, workflow_engine, active_slot, buyer, clock):
        slot = active_slot()
        clock.advance_days(3)

        outcomes = _race(lambda: workflow_engine.refunds.request_refund(buyer, slot.id, "rank dropped"))

        created = [value for kind, value in outcomes if kind == "ok"]
        errors = [value for kind, value in outcomes if kind == "error"]
        assert len(created) == 1
        assert all(isinstance(e, ConflictingRefundRequestError) for e in errors)
        assert len(workflow_engine.refunds.history(buyer, slot.id)) == 1

    def test_approval_moves_money_once(
        self, workflow_engine, active_slot, buyer, distributor, clock
    ):
        slot = active_slot()
        clock.advance_days(3)
        refund = workflow_engine.refunds.request_refund(buyer, slot.id, "rank dropped")

        outcomes = _race(lambda: workflow_engine.refunds.approve(distributor, refund.id))

        assert all(kind == "ok" for kind, _ in outcomes)
        with session_scope() as session:
            refunds = [
                t for t in GuaranteeSelector(session).transactions_for_slot(slot.id)
                if t.transaction_type == TransactionType.REFUND
            ]
            assert len(refunds) == 1
            assert SqlLedger(session).available_balance(buyer.actor_id) == Decimal("967000")


class TestConcurrentPurchase:

    def test_one_slot_per_request(self, workflow_engine, accepted_request, fund, buyer):
        request = accepted_request()
        fund(buyer.actor_id)

        outcomes = _race(lambda: workflow_engine.quotes.purchase(buyer, request.id))

        wins = [value for kind, value in outcomes if kind == "ok"]
        errors = [value for kind, value in outcomes if kind == "error"]
        assert len(wins) == 1
        assert all(isinstance(e, InvalidTransitionError) for e in errors)
        with session_scope() as session:
            assert SqlLedger(session).available_balance(buyer.actor_id) == Decimal("890000")
