"""
Concurrency tests for decisions and submissions.

Competing decisions on one request must produce exactly one committed
status and one ledger row; decisions on different requests must not
block each other.  The SQL variant relies on the repository's
compare-and-swap, not on the service's in-process lock.
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest

from expense_kernel.domain.validation import validate_submission
from expense_kernel.domain.values import ExpenseStatus
from expense_kernel.exceptions import InvalidTransitionError
from expense_kernel.services.ledger_recorder import SqlLedgerRecorder
from expense_kernel.services.request_repository import SqlRequestRepository
from expense_kernel.services.workflow_service import ExpenseWorkflowService
from tests.conftest import FIXED_NOW, make_form

pytestmark = pytest.mark.slow_locks


def _race(threads, fn, *args_per_thread):
    barrier = Barrier(threads)

    def _run(args):
        barrier.wait()
        try:
            return fn(*args)
        except InvalidTransitionError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=threads) as pool:
        return list(pool.map(_run, args_per_thread))


class TestCompetingDecisions:
    def test_one_of_many_decisions_wins(self, workflow_service, recorder):
        request_id = workflow_service.submit(make_form()).request_id
        verdicts = ["Approved", "Rejected"] * 5

        outcomes = _race(
            len(verdicts),
            workflow_service.decide,
            *[(request_id, v) for v in verdicts],
        )

        winners = [o for o in outcomes if not isinstance(o, InvalidTransitionError)]
        losers = [o for o in outcomes if isinstance(o, InvalidTransitionError)]
        assert len(winners) == 1
        assert len(losers) == len(verdicts) - 1
        final = workflow_service.get(request_id).status
        assert final is winners[0].request.status
        assert [r.status for r in recorder.records] == [final]

    def test_decisions_on_different_requests_all_succeed(self, workflow_service, recorder):
        ids = [workflow_service.submit(make_form()).request_id for _ in range(10)]

        outcomes = _race(len(ids), workflow_service.decide, *[(i, "Approved") for i in ids])

        assert all(o.request.status is ExpenseStatus.APPROVED for o in outcomes)
        assert sorted(r.request_id for r in recorder.records) == sorted(ids)

    def test_concurrent_submissions_get_distinct_ids(
        self, repository, dispatcher, recorder, deterministic_clock,
    ):
        service = ExpenseWorkflowService(repository, dispatcher, recorder, deterministic_clock)
        try:
            with ThreadPoolExecutor(max_workers=8) as pool:
                results = list(pool.map(lambda _: service.submit(make_form()), range(20)))
        finally:
            service.close()

        ids = {r.request_id for r in results}
        assert len(ids) == 20
        assert len(repository.list()) == 20


class TestCompareAndSwap:
    def test_two_services_sharing_a_database(
        self, sql_session_factory, dispatcher, deterministic_clock, id_factory,
    ):
        """Separate service instances share no lock; the UPDATE guard decides."""
        repository = SqlRequestRepository(sql_session_factory)
        recorder = SqlLedgerRecorder(sql_session_factory)
        services = [
            ExpenseWorkflowService(
                repository, dispatcher, recorder, deterministic_clock, id_factory=id_factory,
            )
            for _ in range(2)
        ]
        try:
            request_id = services[0].submit(make_form()).request_id
            outcomes = _race(
                2,
                lambda service, verdict: service.decide(request_id, verdict),
                (services[0], "Approved"),
                (services[1], "Rejected"),
            )
        finally:
            for service in services:
                service.close()

        assert sum(isinstance(o, InvalidTransitionError) for o in outcomes) == 1
        assert len(recorder.records(request_id)) == 1

    def test_repository_update_is_atomic(self, sql_session_factory):
        repository = SqlRequestRepository(sql_session_factory)
        data = validate_submission(make_form(), FIXED_NOW).data
        repository.create(data.to_request("REQ-0001", FIXED_NOW))

        outcomes = _race(
            4,
            lambda status: repository.update_status("REQ-0001", status, decided_at=FIXED_NOW),
            (ExpenseStatus.APPROVED,),
            (ExpenseStatus.REJECTED,),
            (ExpenseStatus.APPROVED,),
            (ExpenseStatus.REJECTED,),
        )

        assert sum(not isinstance(o, InvalidTransitionError) for o in outcomes) == 1
