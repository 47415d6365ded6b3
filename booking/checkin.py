from datetime import timedelta

from django.utils import timezone

from .errors import OutsideCheckinWindow


def checkin_window(start_at, opens_before_min: int, closes_after_min: int):
    if opens_before_min < 0 or closes_after_min < 0:
        raise ValueError("check-in offsets must not be negative")
    return (
        start_at - timedelta(minutes=opens_before_min),
        start_at + timedelta(minutes=closes_after_min),
    )


def is_within_window(now, start_at, opens_before_min: int, closes_after_min: int) -> bool:
    opens_at, closes_at = checkin_window(start_at, opens_before_min, closes_after_min)
    return opens_at <= now <= closes_at


def window_for_session(session):
    opens, closes = session.dojo_class.checkin_offsets
    return checkin_window(session.start_at, opens, closes)


def ensure_checkin_open(session, now=None) -> None:
    now = now or timezone.now()
    opens_at, closes_at = window_for_session(session)
    if opens_at <= now <= closes_at:
        return
    raise OutsideCheckinWindow(
        "Check-in is open from "
        f"{timezone.localtime(opens_at).strftime('%H:%M')} to {timezone.localtime(closes_at).strftime('%H:%M')}",
        session_id=session.pk,
        opens_at=opens_at.isoformat(),
        closes_at=closes_at.isoformat(),
    )
