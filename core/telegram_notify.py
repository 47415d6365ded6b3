import logging
import threading

import requests
from django.conf import settings
from django.db import transaction
from django.utils import timezone
from django.utils.html import escape


logger = logging.getLogger(__name__)


def tg_send(text: str):
    if not getattr(settings, "TELEGRAM_NOTIFICATIONS", True):
        return

    token = getattr(settings, "TELEGRAM_BOT_TOKEN", "")
    chat_id = getattr(settings, "TELEGRAM_CHAT_ID", "")

    if not token or not chat_id:
        return

    url = f"https://api.telegram.org/bot{token}/sendMessage"
    payload = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "HTML",
        "disable_web_page_preview": True,
    }

    try:
        requests.post(url, json=payload, timeout=5)
    except requests.RequestException:
        logger.warning("Telegram message was not sent due to a request error")


def _deliver(text: str):
    try:
        tg_send(text)
    except Exception:
        # best-effort
        logger.exception("Notification delivery failed")


def send_later(text: str):
    """Queue a message for delivery once the current transaction commits.

    Never blocks the caller: with ACADEMY_NOTIFY_ASYNC the message goes out
    on a daemon thread, and a rolled back transaction sends nothing.
    """
    def _dispatch():
        if getattr(settings, "ACADEMY_NOTIFY_ASYNC", True):
            threading.Thread(target=_deliver, args=(text,), daemon=True).start()
        else:
            _deliver(text)

    transaction.on_commit(_dispatch)


def occupancy_line(current: int, capacity):
    """
    Returns a line like: 👥 Seats: 3 / 10
    When capacity is unknown only the current number is shown.
    """
    if capacity in (None, "", 0):
        return f"👥 Seats: <b>{current}</b>"
    return f"👥 Seats: <b>{current} / {capacity}</b>"


def _fmt_member(member) -> str:
    if not member:
        return "—"
    return escape(str(member) or "—")


def _fmt_session(session) -> str:
    name = getattr(getattr(session, "dojo_class", None), "name", "") or "Class"
    start_at = getattr(session, "start_at", None)
    when = timezone.localtime(start_at).strftime("%d.%m.%Y %H:%M") if start_at else "—"
    return f"<b>{escape(name)}</b> ({when})"


def _session_occupancy(session) -> str:
    return occupancy_line(int(session.confirmed_count), session.effective_capacity)


def notify_reservation_promoted(*, member, session):
    send_later(
        "⬆️ <b>Promoted from the waitlist</b>\n"
        f"Member: <b>{_fmt_member(member)}</b>\n"
        f"Session: {_fmt_session(session)}\n"
        f"{_session_occupancy(session)}"
    )


def notify_reservation_cancelled(*, member, session, reason: str = ""):
    reason_line = f"\nReason: <b>{escape(reason)}</b>" if reason else ""
    send_later(
        "❌ <b>Reservation cancelled</b>\n"
        f"Member: <b>{_fmt_member(member)}</b>\n"
        f"Session: {_fmt_session(session)}\n"
        f"{_session_occupancy(session)}{reason_line}"
    )


def notify_session_cancelled(*, session, affected: int):
    reason = getattr(session, "cancel_reason", "") or ""
    reason_line = f"\nReason: <b>{escape(reason)}</b>" if reason else ""
    send_later(
        "🚫 <b>Session cancelled</b>\n"
        f"Session: {_fmt_session(session)}\n"
        f"Reservations cancelled: <b>{affected}</b>{reason_line}"
    )
