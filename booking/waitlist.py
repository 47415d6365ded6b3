"""FIFO waitlist per session.

All functions expect the caller to hold the session lock
(:func:`booking.ledger.lock_session`), which makes every renumbering a
single serialized pass.
"""
from schedule.models import Session

from .models import Reservation


def waiting(session):
    """Waitlisted reservations in arrival order."""
    return (
        Reservation.objects
        .filter(session_id=session.pk, status=Reservation.Status.WAITLISTED)
        .order_by("created_at", "id")
    )


def has_waiting(session) -> bool:
    return waiting(session).exists()


def _renumber(session, exclude_id=None) -> list[Reservation]:
    qs = waiting(session)
    if exclude_id is not None:
        qs = qs.exclude(pk=exclude_id)
    entries = list(qs)

    changed = []
    for pos, r in enumerate(entries, start=1):
        if r.waitlist_position != pos:
            r.waitlist_position = pos
            changed.append(r)
    if changed:
        Reservation.objects.bulk_update(changed, ["waitlist_position"])

    Session.objects.filter(pk=session.pk).update(waitlisted_count=len(entries))
    session.waitlisted_count = len(entries)
    return entries


def renumber(session) -> int:
    """Rewrite positions to 1..N; returns N."""
    return len(_renumber(session))


def enqueue(reservation: Reservation) -> int:
    """Place an already saved waitlisted reservation in line; returns its position."""
    if reservation.status != Reservation.Status.WAITLISTED:
        raise ValueError("only waitlisted reservations can be enqueued")

    for r in _renumber(reservation.session):
        if r.pk == reservation.pk:
            reservation.waitlist_position = r.waitlist_position
            return r.waitlist_position
    raise ValueError(f"reservation {reservation.pk} is not waitlisted in its session")


def promote_next(session) -> Reservation | None:
    """Pop the head of the line.

    The returned reservation is still ``waitlisted`` with its position
    cleared; the caller moves it to ``confirmed``. The rest of the line is
    renumbered right away.
    """
    head = waiting(session).first()
    if head is None:
        return None

    head.waitlist_position = None
    head.save(update_fields=["waitlist_position"])
    _renumber(session, exclude_id=head.pk)
    return head


def positions(session) -> list[tuple[int, int]]:
    """(reservation id, position) pairs, head first."""
    return list(
        Reservation.objects
        .filter(session_id=session.pk, status=Reservation.Status.WAITLISTED)
        .order_by("waitlist_position", "created_at", "id")
        .values_list("id", "waitlist_position")
    )
