"""Seat accounting for sessions.

The per-session counters live on ``schedule.Session``. Every change goes
through a row lock on the session plus a conditional UPDATE, so two
concurrent requests can never both take the last seat.
"""
import functools
import logging
from dataclasses import dataclass

from django.conf import settings
from django.db import OperationalError, transaction
from django.db.models import F

from schedule.models import Session

from .errors import NotFound


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Grant:
    granted: bool
    current_count: int
    capacity: int
    exempt: bool = False


@dataclass(frozen=True)
class Occupancy:
    capped: int
    exempt: int
    capacity: int

    @property
    def is_full(self) -> bool:
        return self.capped >= self.capacity

    @property
    def seats_left(self) -> int:
        return max(0, self.capacity - self.capped)

    @property
    def total(self) -> int:
        return self.capped + self.exempt


def lock_session(session_id) -> Session:
    """Fetch the session row under ``SELECT ... FOR UPDATE``.

    Must run inside a transaction; the lock serializes every seat and
    waitlist change of that session until commit.
    """
    try:
        return Session.objects.select_for_update().select_related("dojo_class").get(pk=session_id)
    except Session.DoesNotExist:
        raise NotFound("Session not found", session_id=session_id)


def _reserve_once(session_id, exempt: bool) -> Grant:
    session = lock_session(session_id)
    capacity = session.effective_capacity

    if exempt:
        Session.objects.filter(pk=session.pk).update(exempt_count=F("exempt_count") + 1)
        session.refresh_from_db(fields=["confirmed_count", "exempt_count"])
        return Grant(True, int(session.confirmed_count), capacity, exempt=True)

    updated = (
        Session.objects
        .filter(pk=session.pk, confirmed_count__lt=capacity)
        .update(confirmed_count=F("confirmed_count") + 1)
    )
    session.refresh_from_db(fields=["confirmed_count"])
    return Grant(bool(updated), int(session.confirmed_count), capacity)


def try_reserve(session_id, *, exempt: bool = False) -> Grant:
    """Take one seat if the hard cap allows it.

    Exempt walk-ins always get a seat and are counted apart from the cap.
    A refused grant leaves the counters untouched.
    """
    with transaction.atomic():
        return _reserve_once(session_id, exempt)


def retry_on_conflict(op):
    """Run ``op`` in its own transaction, retrying it on lock conflicts.

    A lock timeout or deadlock rolls the whole transaction back, so every
    attempt starts over from the session lock. Gives up after
    ACADEMY_LEDGER_MAX_ATTEMPTS attempts and re-raises.
    """
    @functools.wraps(op)
    def wrapper(*args, **kwargs):
        attempts = max(1, int(getattr(settings, "ACADEMY_LEDGER_MAX_ATTEMPTS", 3)))
        for attempt in range(1, attempts + 1):
            try:
                with transaction.atomic():
                    return op(*args, **kwargs)
            except OperationalError:
                if attempt >= attempts:
                    logger.error("%s failed after %s attempts on lock conflicts", op.__name__, attempt)
                    raise
                logger.warning("%s hit a lock conflict, retry %s", op.__name__, attempt)
        raise AssertionError("unreachable")
    return wrapper


def release(session_id, *, exempt: bool = False) -> int:
    """Give one seat back; counters never go below zero."""
    field = "exempt_count" if exempt else "confirmed_count"
    Session.objects.filter(pk=session_id, **{f"{field}__gt": 0}).update(**{field: F(field) - 1})
    return int(Session.objects.filter(pk=session_id).values_list(field, flat=True).first() or 0)


def occupancy(session: Session) -> Occupancy:
    return Occupancy(
        capped=int(session.confirmed_count),
        exempt=int(session.exempt_count),
        capacity=session.effective_capacity,
    )
