"""
ExpenseWorkflowService -- expense request lifecycle orchestration.

Responsibility:
    Turns a form submission into a Pending request and an approver decision
    into a committed terminal status, then drives the side effects: ledger
    append, decision comment and notifications.

Architecture position:
    Kernel > Services -- imperative shell.  Depends on a RequestRepository,
    a LedgerRecorder and a NotificationDispatcher, all injected.  Holds no
    presentation state.

Invariants enforced:
    - Submission is all-or-nothing: a form that fails validation creates
      nothing and reports every violated field.
    - Pending -> Approved/Rejected only.  Decisions on the same request are
      serialized by a per-request lock (and by the repository's
      compare-and-swap); the second one gets InvalidTransitionError.
    - The status change is committed before the ledger append is issued.
    - Ledger append and notifications run concurrently after the commit,
      each bounded by ``external_timeout_seconds``.  Their failures are
      reported as warnings and never undo the committed status.
    - A side effect that timed out but is still running is never re-issued;
      ``retry_side_effects`` leaves it outstanding until it finishes.
    - Comments are metadata: ``annotate`` never changes status.

Failure modes:
    - ValidationError: bad submission, bad decision value, empty comment.
    - RequestNotFoundError: unknown request id.
    - InvalidTransitionError: decision on an Approved/Rejected request.
    - Partial success: DecisionResult.failures / SubmissionResult.failures
      list SideEffectFailure entries; re-issue them with
      ``retry_side_effects`` without re-running the transition.
"""

from __future__ import annotations

import contextvars
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from expense_kernel.domain.clock import Clock, SystemClock
from expense_kernel.domain.validation import (
    DEFAULT_MAX_BILL_AGE_DAYS,
    read_field,
    validate_submission,
)
from expense_kernel.domain.values import (
    Decision,
    ExpenseRequest,
    ExpenseStatus,
    LedgerRecord,
    ReviewerComment,
)
from expense_kernel.domain.workflow import transition_for
from expense_kernel.exceptions import (
    ExternalServiceError,
    ExternalServiceTimeoutError,
    InvalidTransitionError,
    ValidationError,
)
from expense_kernel.logging_config import LogContext, get_logger
from expense_kernel.services.ledger_recorder import LedgerRecorder
from expense_kernel.services.notification_dispatcher import (
    NotificationAttempt,
    NotificationDispatcher,
    NotificationKind,
)
from expense_kernel.services.request_repository import RequestRepository

logger = get_logger("services.workflow")

LEDGER_EFFECT = "ledger"
NOTIFICATION_EFFECT = "notification"
COMMENT_EFFECT = "comment"


@dataclass(frozen=True)
class SideEffectFailure:
    """A ledger append, comment or notification that did not complete."""

    effect: str
    target: str
    error_code: str
    message: str
    kind: NotificationKind | None = None


@dataclass(frozen=True)
class SubmissionResult:
    request: ExpenseRequest
    notifications: tuple[NotificationAttempt, ...]
    failures: tuple[SideEffectFailure, ...] = ()

    @property
    def request_id(self) -> str:
        return self.request.request_id


@dataclass(frozen=True)
class DecisionResult:
    """A committed decision plus what happened to its side effects."""

    request: ExpenseRequest
    ledger_record: LedgerRecord | None
    ledger_recorded: bool
    notification: NotificationAttempt | None
    failures: tuple[SideEffectFailure, ...] = ()

    @property
    def is_partial(self) -> bool:
        """Decision recorded, but a side effect failed."""
        return bool(self.failures)

    @property
    def warnings(self) -> list[str]:
        return [f"{f.effect} to {f.target} failed: {f.message}" for f in self.failures]


@dataclass(frozen=True)
class SideEffectReport:
    """Result of ``retry_side_effects``.

    ``in_flight`` lists timed-out effects that were still running and so
    were left alone.
    """

    request_id: str
    retried: int
    failures: tuple[SideEffectFailure, ...] = ()
    in_flight: tuple[SideEffectFailure, ...] = ()


@dataclass(frozen=True)
class _SideEffect:
    effect: str
    target: str
    ledger_record: LedgerRecord | None = None
    kind: NotificationKind | None = None
    payload: Mapping[str, Any] | None = None
    comment: ReviewerComment | None = None


@dataclass(frozen=True)
class _Outstanding:
    effect: _SideEffect
    failure: SideEffectFailure
    # set only for timeouts; the call may still be running
    future: Future | None = None

    @property
    def in_flight(self) -> bool:
        return self.future is not None and not self.future.done()


class _RequestLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.holders = 0


def _completed(future: Future) -> bool:
    """True when a finished side-effect call actually did its work."""
    if future.cancelled() or future.exception() is not None:
        return False
    outcome = future.result()
    return not (isinstance(outcome, NotificationAttempt) and not outcome.succeeded)


class ExpenseWorkflowService:
    """Submission, decision and annotation of expense requests."""

    def __init__(
        self,
        repository: RequestRepository,
        dispatcher: NotificationDispatcher,
        recorder: LedgerRecorder,
        clock: Clock | None = None,
        *,
        max_bill_age_days: int = DEFAULT_MAX_BILL_AGE_DAYS,
        external_timeout_seconds: float = 10.0,
        max_workers: int = 8,
        approvers: Mapping[str, str] | None = None,
        finance_mailbox: str | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._repository = repository
        self._dispatcher = dispatcher
        self._recorder = recorder
        self._clock = clock or SystemClock()
        self._max_bill_age_days = max_bill_age_days
        self._timeout = external_timeout_seconds
        self._approvers = dict(approvers or {})
        self._finance_mailbox = finance_mailbox
        self._id_factory = id_factory or (lambda: uuid4().hex)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="expense-side-effect",
        )
        # Only requests with a decision in progress have an entry.
        self._locks: dict[str, _RequestLock] = {}
        self._locks_guard = threading.Lock()
        self._outstanding: dict[str, list[_Outstanding]] = {}
        self._outstanding_lock = threading.Lock()
    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, form: Mapping[str, Any]) -> SubmissionResult:
        """Validate, store as Pending, notify submitter and approver."""
        form, unknown_approver = self._resolve_approver(form)
        now = self._clock.now_utc()
        result = validate_submission(form, now, max_age_days=self._max_bill_age_days)
        if not result.is_valid:
            errors = dict(result.errors)
            if unknown_approver is not None and "approver_email" in errors:
                errors["approver_email"] = f"unknown approver: {unknown_approver}"
            logger.info("submission_rejected", extra={"fields": sorted(errors)})
            raise ValidationError(errors)

        request = result.data.to_request(self._id_factory(), submitted_at=now)
        self._repository.create(request)

        with LogContext.bind(request_id=request.request_id):
            logger.info(
                "request_submitted",
                extra={
                    "employee_id": request.employee_id,
                    "expense_type": request.expense_type.value,
                    "amount": request.amount,
                    "approver_email": request.approver_email,
                },
            )
            payload = request.describe()
            effects = [
                _SideEffect(
                    NOTIFICATION_EFFECT,
                    request.submitter_address,
                    kind=NotificationKind.SUBMISSION_CONFIRMATION,
                    payload=payload,
                ),
                _SideEffect(
                    NOTIFICATION_EFFECT,
                    request.approver_email,
                    kind=NotificationKind.APPROVAL_REQUEST,
                    payload=payload,
                ),
            ]
            if self._finance_mailbox:
                effects.append(
                    _SideEffect(
                        NOTIFICATION_EFFECT,
                        self._finance_mailbox,
                        kind=NotificationKind.SUBMISSION_CONFIRMATION,
                        payload=payload,
                    )
                )
            outcomes, failures = self._run_side_effects(request.request_id, effects)

        return SubmissionResult(
            request=request,
            notifications=tuple(o for o in outcomes if isinstance(o, NotificationAttempt)),
            failures=failures,
        )

    def _resolve_approver(
        self, form: Mapping[str, Any],
    ) -> tuple[Mapping[str, Any], str | None]:
        """Fill approver_email from approver_id when only the id was given."""
        email = read_field(form, "approver_email")
        approver_id = read_field(form, "approver_id")
        if (isinstance(email, str) and email.strip()) or approver_id is None:
            return form, None
        resolved = self._approvers.get(str(approver_id))
        if resolved is None:
            return form, str(approver_id)
        return {**form, "approver_email": resolved}, None


    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    def decide(
        self,
        request_id: str,
        decision: Decision | ExpenseStatus | str,
        comment: str | None = None,
    ) -> DecisionResult:
        """Move a Pending request to Approved/Rejected, then record and notify."""
        try:
            verdict = Decision.parse(decision)
        except ValueError:
            raise ValidationError(
                {"decision": "decision must be Approved or Rejected"}
            ) from None
        target = verdict.target_status

        with LogContext.bind(request_id=request_id):
            with self._request_lock(request_id):
                current = self._repository.get(request_id)
                transition = transition_for(current.status, target)
                if transition is None:
                    logger.info(
                        "decision_refused",
                        extra={
                            "current_status": current.status.value,
                            "target_status": target.value,
                        },
                    )
                    raise InvalidTransitionError(
                        request_id, current.status.value, target.value,
                    )
                decided = self._repository.update_status(
                    request_id, target, decided_at=self._clock.now_utc(),
                )
                logger.info(
                    "decision_committed",
                    extra={"status": decided.status.value, "action": transition.action},
                )

            payload = decided.describe()
            failed: list[_Outstanding] = []
            text = comment.strip() if comment else ""
            if text:
                payload["comment"] = text
                decided, comment_failure = self._attach_comment(
                    decided,
                    ReviewerComment(text=text, recorded_at=self._clock.now_utc()),
                )
                if comment_failure is not None:
                    failed.append(comment_failure)

            effects = []
            record = None
            if transition.records_ledger:
                record = LedgerRecord.from_request(decided)
                effects.append(_SideEffect(LEDGER_EFFECT, "ledger", ledger_record=record))
            effects.append(
                _SideEffect(
                    NOTIFICATION_EFFECT,
                    decided.submitter_address,
                    kind=NotificationKind.DECISION_NOTICE,
                    payload=payload,
                )
            )
            outcomes, failures = self._run_side_effects(request_id, effects, failed)

        notification = next(
            (o for o in outcomes if isinstance(o, NotificationAttempt)), None,
        )
        return DecisionResult(
            request=decided,
            ledger_record=record,
            ledger_recorded=(
                record is not None
                and not any(f.effect == LEDGER_EFFECT for f in failures)
            ),
            notification=notification,
            failures=failures,
        )

    def _attach_comment(
        self, decided: ExpenseRequest, note: ReviewerComment,
    ) -> tuple[ExpenseRequest, _Outstanding | None]:
        """Store the decision comment; a failure is queued for retry, not raised."""
        try:
            return self._repository.add_comment(decided.request_id, note), None
        except Exception as exc:
            logger.exception(
                "side_effect_crashed",
                extra={"effect": COMMENT_EFFECT, "target": decided.request_id},
            )
            effect = _SideEffect(COMMENT_EFFECT, decided.request_id, comment=note)
            return decided, _Outstanding(
                effect, self._failure(effect, "UNEXPECTED_ERROR", str(exc)),
            )

    def annotate(self, request_id: str, comment: str) -> ExpenseRequest:
        """Attach a reviewer comment without touching status."""
        text = (comment or "").strip()
        if not text:
            raise ValidationError({"comment": "comment must not be empty"})
        updated = self._repository.add_comment(
            request_id, ReviewerComment(text=text, recorded_at=self._clock.now_utc()),
        )
        logger.info(
            "comment_recorded",
            extra={"request_id": request_id, "status": updated.status.value},
        )
        return updated

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------

    def retry_side_effects(self, request_id: str) -> SideEffectReport:
        """Re-issue the failed side effects of a request, nothing else.

        Timed-out calls that are still running stay outstanding and are not
        issued a second time; ones that have since finished are settled by
        their own outcome.
        """
        self._repository.get(request_id)
        with self._outstanding_lock:
            in_flight: list[_Outstanding] = []
            finished: list[_Outstanding] = []
            for entry in self._outstanding.pop(request_id, []):
                (in_flight if entry.in_flight else finished).append(entry)
            if in_flight:
                self._outstanding[request_id] = in_flight
        rerun = [
            e.effect for e in finished
            if e.future is None or not _completed(e.future)
        ]

        with LogContext.bind(request_id=request_id):
            if in_flight:
                logger.info("side_effects_still_running", extra={"count": len(in_flight)})
            failures: tuple[SideEffectFailure, ...] = ()
            if rerun:
                logger.info("side_effects_retry", extra={"count": len(rerun)})
                _, failures = self._run_side_effects(request_id, rerun)
        return SideEffectReport(
            request_id=request_id,
            retried=len(rerun),
            failures=failures,
            in_flight=tuple(e.failure for e in in_flight),
        )

    def pending_failures(self, request_id: str) -> tuple[SideEffectFailure, ...]:
        with self._outstanding_lock:
            return tuple(e.failure for e in self._outstanding.get(request_id, ()))

    def _run_side_effects(
        self,
        request_id: str,
        effects: list[_SideEffect],
        failed: list[_Outstanding] | None = None,
    ) -> tuple[list[NotificationAttempt | None], tuple[SideEffectFailure, ...]]:
        """Run effects concurrently; wait for all under one shared deadline."""
        futures = [
            (effect, self._executor.submit(contextvars.copy_context().run, self._invoke, effect))
            for effect in effects
        ]
        deadline = time.monotonic() + self._timeout
        outcomes: list[NotificationAttempt | None] = []
        failed = list(failed or ())

        for effect, future in futures:
            remaining = max(0.0, deadline - time.monotonic())
            try:
                outcome = future.result(timeout=remaining)
            except FutureTimeoutError:
                exc = ExternalServiceTimeoutError(effect.effect, self._timeout)
                failed.append(
                    _Outstanding(effect, self._failure(effect, exc.code, exc.reason), future)
                )
                continue
            except ExternalServiceError as exc:
                failed.append(_Outstanding(effect, self._failure(effect, exc.code, exc.reason)))
                continue
            except Exception as exc:
                logger.exception(
                    "side_effect_crashed",
                    extra={"effect": effect.effect, "target": effect.target},
                )
                failed.append(
                    _Outstanding(effect, self._failure(effect, "UNEXPECTED_ERROR", str(exc)))
                )
                continue
            outcomes.append(outcome)
            if isinstance(outcome, NotificationAttempt) and not outcome.succeeded:
                failed.append(
                    _Outstanding(
                        effect,
                        self._failure(
                            effect,
                            outcome.error_code or "NOTIFICATION_FAILED",
                            outcome.error_message or "delivery failed",
                        ),
                    )
                )

        if failed:
            with self._outstanding_lock:
                self._outstanding.setdefault(request_id, []).extend(failed)
            logger.warning(
                "side_effects_failed",
                extra={
                    "failures": [
                        {
                            "effect": e.failure.effect,
                            "target": e.failure.target,
                            "code": e.failure.error_code,
                        }
                        for e in failed
                    ],
                },
            )
        for entry in failed:
            if entry.future is not None:
                entry.future.add_done_callback(
                    lambda f, e=entry: self._settle_late(request_id, e)
                )
        return outcomes, tuple(e.failure for e in failed)

    def _invoke(self, effect: _SideEffect) -> NotificationAttempt | None:
        if effect.ledger_record is not None:
            self._recorder.append(effect.ledger_record)
            return None
        if effect.comment is not None:
            self._repository.add_comment(effect.target, effect.comment)
            return None
        return self._dispatcher.notify(effect.kind, effect.target, effect.payload or {})

    def _settle_late(self, request_id: str, entry: _Outstanding) -> None:
        """A timed-out effect finished after all; drop it if it succeeded."""
        if not _completed(entry.future):
            return
        with self._outstanding_lock:
            pending = self._outstanding.get(request_id, [])
            remaining = [e for e in pending if e is not entry]
            if remaining:
                self._outstanding[request_id] = remaining
            else:
                self._outstanding.pop(request_id, None)
        logger.info(
            "side_effect_completed_late",
            extra={
                "request_id": request_id,
                "effect": entry.effect.effect,
                "target": entry.effect.target,
            },
        )

    @staticmethod
    def _failure(effect: _SideEffect, code: str, message: str) -> SideEffectFailure:
        return SideEffectFailure(
            effect=effect.effect,
            target=effect.target,
            error_code=code,
            message=message,
            kind=effect.kind,
        )

    @contextmanager
    def _request_lock(self, request_id: str) -> Iterator[None]:
        """Serialize decisions on one request; the entry goes once unused."""
        with self._locks_guard:
            entry = self._locks.get(request_id)
            if entry is None:
                entry = self._locks[request_id] = _RequestLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[request_id]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> ExpenseRequest:
        return self._repository.get(request_id)

    def list_requests(self, status: ExpenseStatus | None = None) -> list[ExpenseRequest]:
        return self._repository.list(status)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> ExpenseWorkflowService:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
