"""Reservation lifecycle.

    waitlisted ──cancel──────────────▶ cancelled
        │
     promote
        ▼
    confirmed ──cancel (cutoff)──────▶ cancelled
        ├──────check-in (window)─────▶ checked_in
        └──────finalize (finished)───▶ no_show

Every operation runs in one transaction that starts by locking the session
row, so seat counts, waitlist positions and attendance records change
together or not at all. Domain errors are raised inside and handed back to
the caller as a result object.
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from core.telegram_notify import (
    notify_reservation_cancelled,
    notify_reservation_promoted,
    notify_session_cancelled,
)
from members.models import Member
from schedule.models import Session

from . import attendance, checkin, ledger, waitlist
from .eligibility import check_eligibility, check_exempt
from .errors import (
    BookingError,
    CancellationCutoffPassed,
    DuplicateReservation,
    InvalidTransition,
    NotEligible,
    NotFound,
    SessionFull,
    SessionNotBookable,
)
from .models import AttendanceRecord, Reservation


logger = logging.getLogger(__name__)

ROLE_ADMIN = "admin"
ROLE_INSTRUCTOR = "instructor"
ROLE_MEMBER = "member"
ROLE_SYSTEM = "system"

REASON_SESSION_FINISHED = "session_finished"
REASON_SESSION_CANCELLED = "session_cancelled"


@dataclass
class BookingResult:
    ok: bool
    reservation: Reservation | None = None
    error: BookingError | None = None
    promoted: list[Reservation] = field(default_factory=list)
    attendance: AttendanceRecord | None = None

    @property
    def status(self) -> str | None:
        return self.reservation.status if self.reservation else None

    @property
    def waitlisted(self) -> bool:
        return self.status == Reservation.Status.WAITLISTED

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error else None


@dataclass
class BatchResult:
    ok: bool
    session: Session | None = None
    error: BookingError | None = None
    promoted: list[Reservation] = field(default_factory=list)
    absent_marked: list[Reservation] = field(default_factory=list)
    waitlist_closed: list[Reservation] = field(default_factory=list)
    cancelled: list[Reservation] = field(default_factory=list)

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error else None


FinalizeResult = BatchResult


def _returns(result_cls):
    """Turn domain errors raised by ``op`` into a failed ``result_cls``."""
    def decorator(op):
        @functools.wraps(op)
        def wrapper(*args, **kwargs):
            try:
                return op(*args, **kwargs)
            except BookingError as e:
                logger.info("%s refused: %s %s", op.__name__, e.code, e.context)
                return result_cls(ok=False, error=e)
        return wrapper
    return decorator


def _get_member(member_id) -> Member:
    try:
        return Member.objects.get(pk=member_id)
    except Member.DoesNotExist:
        raise NotFound("Member not found", member_id=member_id)


def _lock_reservation(reservation_id):
    """Lock the session first, then the reservation (always in that order)."""
    session_id = (
        Reservation.objects
        .filter(pk=reservation_id)
        .values_list("session_id", flat=True)
        .first()
    )
    if session_id is None:
        raise NotFound("Reservation not found", reservation_id=reservation_id)

    session = ledger.lock_session(session_id)
    reservation = (
        Reservation.objects
        .select_for_update()
        .select_related("member")
        .get(pk=reservation_id)
    )
    reservation.session = session
    return session, reservation


def _refuse_terminal(reservation, action: str):
    if reservation.is_terminal:
        raise InvalidTransition(
            f"Cannot {action} a reservation that is {reservation.status}",
            reservation_id=reservation.pk,
            session_id=reservation.session_id,
            member_id=reservation.member_id,
            status=reservation.status,
        )


def _insert(*, session, member, kind, status, now, source) -> Reservation:
    try:
        with transaction.atomic():
            return Reservation.objects.create(
                session=session,
                member=member,
                kind=kind,
                status=status,
                source=source,
                created_at=now,
            )
    except IntegrityError:
        raise DuplicateReservation(session_id=session.pk, member_id=member.pk)


def _mark_cancelled(reservation, *, now, reason: str, role: str) -> None:
    reservation.status = Reservation.Status.CANCELLED
    reservation.waitlist_position = None
    reservation.cancelled_at = now
    reservation.cancel_reason = (reason or "")[:200]
    reservation.cancelled_by_role = role
    reservation.save(update_fields=[
        "status",
        "waitlist_position",
        "cancelled_at",
        "cancel_reason",
        "cancelled_by_role",
    ])


def _fill_open_seats(session, *, now) -> list[Reservation]:
    """Promote waitlisted reservations while the ledger grants seats."""
    promoted = []
    while waitlist.has_waiting(session):
        grant = ledger.try_reserve(session.pk)
        if not grant.granted:
            break
        head = waitlist.promote_next(session)
        head.status = Reservation.Status.CONFIRMED
        head.promoted_at = now
        head.save(update_fields=["status", "promoted_at"])
        promoted.append(head)
        logger.info("Reservation %s promoted from the waitlist of session %s", head.pk, session.pk)

    session.refresh_from_db(fields=["confirmed_count", "exempt_count", "waitlisted_count"])
    for r in promoted:
        notify_reservation_promoted(member=r.member, session=session)
    return promoted


@_returns(BookingResult)
@ledger.retry_on_conflict
def create_reservation(session_id, member_id, kind=Reservation.Kind.NORMAL, *, now=None, source=Reservation.Source.API):
    if kind not in Reservation.Kind.values:
        raise ValueError(f"unknown reservation kind: {kind}")
    now = now or timezone.now()

    with transaction.atomic():
        session = ledger.lock_session(session_id)
        member = _get_member(member_id)

        if session.status != Session.Status.SCHEDULED or session.has_started(now):
            raise SessionNotBookable(
                session_id=session.pk,
                member_id=member.pk,
                session_status=session.status,
            )

        eligibility = check_eligibility(member, session.dojo_class)
        if eligibility.ok and kind == Reservation.Kind.EXEMPT_WALKIN:
            eligibility = check_exempt(member)
        if not eligibility.ok:
            raise NotEligible(
                eligibility.detail,
                session_id=session.pk,
                member_id=member.pk,
                reason=eligibility.reason,
            )

        active = (
            Reservation.objects
            .filter(session=session, member=member)
            .exclude(status=Reservation.Status.CANCELLED)
            .first()
        )
        if active:
            raise DuplicateReservation(
                session_id=session.pk,
                member_id=member.pk,
                reservation_id=active.pk,
                status=active.status,
            )

        exempt = kind == Reservation.Kind.EXEMPT_WALKIN
        grant = ledger.try_reserve(session.pk, exempt=exempt)
        if grant.granted:
            reservation = _insert(
                session=session, member=member, kind=kind,
                status=Reservation.Status.CONFIRMED, now=now, source=source,
            )
        else:
            if not session.dojo_class.allow_waitlist:
                raise SessionFull(
                    session_id=session.pk,
                    member_id=member.pk,
                    capacity=grant.capacity,
                    seats_taken=grant.current_count,
                )
            reservation = _insert(
                session=session, member=member, kind=kind,
                status=Reservation.Status.WAITLISTED, now=now, source=source,
            )
            waitlist.enqueue(reservation)

    logger.info(
        "Reservation %s for member %s in session %s: %s%s",
        reservation.pk,
        member.pk,
        session.pk,
        reservation.status,
        f" #{reservation.waitlist_position}" if reservation.waitlist_position else "",
    )
    return BookingResult(ok=True, reservation=reservation)


@_returns(BookingResult)
@ledger.retry_on_conflict
def cancel_reservation(reservation_id, actor_role=ROLE_MEMBER, reason="", *, now=None):
    now = now or timezone.now()

    with transaction.atomic():
        session, reservation = _lock_reservation(reservation_id)

        if reservation.status == Reservation.Status.CHECKED_IN:
            raise InvalidTransition(
                "Attendance is already confirmed and cannot be retracted",
                reservation_id=reservation.pk,
                session_id=session.pk,
                member_id=reservation.member_id,
                status=reservation.status,
            )
        _refuse_terminal(reservation, "cancel")

        promoted = []
        if reservation.status == Reservation.Status.WAITLISTED:
            _mark_cancelled(reservation, now=now, reason=reason, role=actor_role)
            waitlist.renumber(session)
        else:
            deadline = session.start_at - timedelta(minutes=session.dojo_class.cancellation_cutoff)
            if actor_role != ROLE_ADMIN and now >= deadline:
                raise CancellationCutoffPassed(
                    reservation_id=reservation.pk,
                    session_id=session.pk,
                    member_id=reservation.member_id,
                    deadline=deadline.isoformat(),
                )
            _mark_cancelled(reservation, now=now, reason=reason, role=actor_role)
            ledger.release(session.pk, exempt=reservation.is_exempt)
            promoted = _fill_open_seats(session, now=now)

        session.refresh_from_db(fields=["confirmed_count", "exempt_count", "waitlisted_count"])
        notify_reservation_cancelled(member=reservation.member, session=session, reason=reason)

    logger.info("Reservation %s cancelled by %s (%s)", reservation.pk, actor_role, reason or "no reason")
    return BookingResult(ok=True, reservation=reservation, promoted=promoted)


@_returns(BookingResult)
def check_in(reservation_id, now=None):
    now = now or timezone.now()

    with transaction.atomic():
        session, reservation = _lock_reservation(reservation_id)

        if session.status not in (Session.Status.SCHEDULED, Session.Status.IN_PROGRESS):
            raise InvalidTransition(
                f"Session is {session.status}",
                reservation_id=reservation.pk,
                session_id=session.pk,
                session_status=session.status,
            )
        checkin.ensure_checkin_open(session, now)

        if reservation.status == Reservation.Status.CHECKED_IN:
            raise InvalidTransition(
                "Already checked in",
                reservation_id=reservation.pk,
                session_id=session.pk,
                status=reservation.status,
            )
        _refuse_terminal(reservation, "check in")
        if reservation.status != Reservation.Status.CONFIRMED:
            raise InvalidTransition(
                "Only confirmed reservations can check in",
                reservation_id=reservation.pk,
                session_id=session.pk,
                status=reservation.status,
            )

        reservation.status = Reservation.Status.CHECKED_IN
        reservation.checked_in_at = now
        reservation.save(update_fields=["status", "checked_in_at"])
        record, _ = attendance.record_present(reservation, now)

    logger.info("Reservation %s checked in (%s)", reservation.pk, record.status)
    return BookingResult(ok=True, reservation=reservation, attendance=record)


@_returns(BookingResult)
def check_out(reservation_id, now=None):
    now = now or timezone.now()

    with transaction.atomic():
        session, reservation = _lock_reservation(reservation_id)
        if reservation.status != Reservation.Status.CHECKED_IN:
            raise InvalidTransition(
                "Only checked-in reservations can check out",
                reservation_id=reservation.pk,
                session_id=session.pk,
                status=reservation.status,
            )
        record = AttendanceRecord.objects.select_for_update().get(reservation_id=reservation.pk)
        record.session = session
        attendance.record_checkout(record, now)

    return BookingResult(ok=True, reservation=reservation, attendance=record)


@_returns(BatchResult)
def finalize_session(session_id, *, now=None):
    """Post-session batch: confirmed but never checked in becomes no_show.

    Safe to run repeatedly; a second run finds nothing left to do.
    """
    now = now or timezone.now()

    with transaction.atomic():
        session = ledger.lock_session(session_id)
        if session.status != Session.Status.FINISHED:
            raise InvalidTransition(
                "Session must be finished before it is finalized",
                session_id=session.pk,
                session_status=session.status,
            )

        absent = []
        confirmed = (
            Reservation.objects
            .select_for_update()
            .filter(session=session, status=Reservation.Status.CONFIRMED)
            .order_by("created_at", "id")
        )
        for r in confirmed:
            r.session = session
            r.status = Reservation.Status.NO_SHOW
            r.save(update_fields=["status"])
            attendance.record_absent(r)
            absent.append(r)

        closed = []
        for r in waitlist.waiting(session).select_for_update():
            _mark_cancelled(r, now=now, reason=REASON_SESSION_FINISHED, role=ROLE_SYSTEM)
            closed.append(r)
        if closed:
            waitlist.renumber(session)

        session.refresh_from_db()

    logger.info(
        "Session %s finalized: %s no-show(s), %s waitlist entr(ies) closed",
        session.pk,
        len(absent),
        len(closed),
    )
    return BatchResult(ok=True, session=session, absent_marked=absent, waitlist_closed=closed)


@_returns(BatchResult)
def cancel_session(session_id, reason="", *, now=None):
    """Scheduling-side cancellation: every open reservation is cancelled.

    Checked-in reservations keep their attendance. Nobody is promoted.
    """
    now = now or timezone.now()

    with transaction.atomic():
        session = ledger.lock_session(session_id)
        if session.status in (Session.Status.FINISHED, Session.Status.CANCELLED):
            raise InvalidTransition(
                f"Session is already {session.status}",
                session_id=session.pk,
                session_status=session.status,
            )

        session.status = Session.Status.CANCELLED
        session.cancel_reason = (reason or "")[:200]
        session.save(update_fields=["status", "cancel_reason"])

        cancelled = []
        open_reservations = (
            Reservation.objects
            .select_for_update()
            .select_related("member")
            .filter(
                session=session,
                status__in=[Reservation.Status.CONFIRMED, Reservation.Status.WAITLISTED],
            )
            .order_by("created_at", "id")
        )
        for r in open_reservations:
            held_seat = r.status == Reservation.Status.CONFIRMED
            _mark_cancelled(r, now=now, reason=REASON_SESSION_CANCELLED, role=ROLE_SYSTEM)
            if held_seat:
                ledger.release(session.pk, exempt=r.is_exempt)
            cancelled.append(r)
        waitlist.renumber(session)

        session.refresh_from_db()
        notify_session_cancelled(session=session, affected=len(cancelled))

    logger.info("Session %s cancelled, %s reservation(s) closed", session.pk, len(cancelled))
    return BatchResult(ok=True, session=session, cancelled=cancelled)


@_returns(BatchResult)
@ledger.retry_on_conflict
def resize_session(session_id, capacity_override, *, now=None):
    """Change the capacity override and seat waitlisted members in new room."""
    now = now or timezone.now()
    if capacity_override is not None and int(capacity_override) < 1:
        raise InvalidTransition(
            "Capacity must be at least 1",
            session_id=session_id,
            capacity=int(capacity_override),
        )

    with transaction.atomic():
        session = ledger.lock_session(session_id)
        if session.status not in (Session.Status.SCHEDULED, Session.Status.IN_PROGRESS):
            raise InvalidTransition(
                f"Session is {session.status}",
                session_id=session.pk,
                session_status=session.status,
            )

        new_capacity = int(capacity_override) if capacity_override is not None else int(session.dojo_class.capacity)
        if new_capacity < session.confirmed_count:
            raise InvalidTransition(
                "Capacity cannot drop below the seats already taken",
                session_id=session.pk,
                seats_taken=session.confirmed_count,
                capacity=new_capacity,
            )

        session.capacity_override = capacity_override
        session.save(update_fields=["capacity_override"])
        promoted = _fill_open_seats(session, now=now)

    return BatchResult(ok=True, session=session, promoted=promoted)


def list_reservations(session_id) -> list[Reservation]:
    """Seat holders first (by request time), then the waitlist, then the rest."""
    rank = {
        Reservation.Status.CHECKED_IN: 0,
        Reservation.Status.CONFIRMED: 0,
        Reservation.Status.WAITLISTED: 1,
        Reservation.Status.NO_SHOW: 2,
        Reservation.Status.CANCELLED: 3,
    }
    rows = list(
        Reservation.objects
        .select_related("member")
        .filter(session_id=session_id)
        .order_by("created_at", "id")
    )
    rows.sort(key=lambda r: (rank.get(r.status, 9), r.waitlist_position or 0))
    return rows
