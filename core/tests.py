from datetime import datetime
from unittest import mock

import requests
from django.test import TestCase, override_settings
from django.utils import timezone

from schedule.models import DojoClass, Session

from . import telegram_notify
from .telegram_notify import notify_session_cancelled, occupancy_line, send_later, tg_send


class TelegramSendTests(TestCase):
    @override_settings(TELEGRAM_NOTIFICATIONS=True, TELEGRAM_BOT_TOKEN="123:abc", TELEGRAM_CHAT_ID="-100")
    def test_posts_html_message(self):
        with mock.patch("core.telegram_notify.requests.post") as post:
            tg_send("<b>hi</b>")

        post.assert_called_once()
        self.assertEqual(post.call_args.args[0], "https://api.telegram.org/bot123:abc/sendMessage")
        self.assertEqual(post.call_args.kwargs["json"]["chat_id"], "-100")
        self.assertEqual(post.call_args.kwargs["json"]["parse_mode"], "HTML")

    @override_settings(TELEGRAM_NOTIFICATIONS=False, TELEGRAM_BOT_TOKEN="123:abc", TELEGRAM_CHAT_ID="-100")
    def test_disabled(self):
        with mock.patch("core.telegram_notify.requests.post") as post:
            tg_send("hi")
        post.assert_not_called()

    @override_settings(TELEGRAM_NOTIFICATIONS=True, TELEGRAM_BOT_TOKEN="123:abc", TELEGRAM_CHAT_ID="-100")
    def test_request_error_is_logged(self):
        with mock.patch("core.telegram_notify.requests.post", side_effect=requests.ConnectionError):
            with self.assertLogs("core.telegram_notify", level="WARNING"):
                tg_send("hi")


@override_settings(ACADEMY_NOTIFY_ASYNC=False)
class SendLaterTests(TestCase):
    def test_waits_for_commit(self):
        with mock.patch("core.telegram_notify.tg_send") as send:
            with self.captureOnCommitCallbacks(execute=False) as callbacks:
                send_later("queued")
            send.assert_not_called()
            self.assertEqual(len(callbacks), 1)

            callbacks[0]()
        send.assert_called_once_with("queued")

    def test_sender_failure_does_not_propagate(self):
        with mock.patch("core.telegram_notify.tg_send", side_effect=RuntimeError("boom")):
            with self.assertLogs("core.telegram_notify", level="ERROR"):
                with self.captureOnCommitCallbacks(execute=True):
                    send_later("queued")

    @override_settings(ACADEMY_NOTIFY_ASYNC=True)
    def test_async_uses_daemon_thread(self):
        with mock.patch.object(telegram_notify.threading, "Thread") as thread:
            with self.captureOnCommitCallbacks(execute=True):
                send_later("queued")

        self.assertTrue(thread.call_args.kwargs["daemon"])
        thread.return_value.start.assert_called_once()


class MessageTests(TestCase):
    def test_occupancy_line(self):
        self.assertEqual(occupancy_line(3, 10), "👥 Seats: <b>3 / 10</b>")
        self.assertEqual(occupancy_line(3, None), "👥 Seats: <b>3</b>")

    @override_settings(ACADEMY_NOTIFY_ASYNC=False)
    def test_session_cancelled_text(self):
        start = timezone.make_aware(datetime(2030, 1, 2, 7, 0))
        session = Session(
            dojo_class=DojoClass(name="Kids <A>"),
            date=start.date(),
            start_at=start,
            end_at=start,
            cancel_reason="Power outage",
        )

        with mock.patch("core.telegram_notify.tg_send") as send:
            with self.captureOnCommitCallbacks(execute=True):
                notify_session_cancelled(session=session, affected=4)

        text = send.call_args.args[0]
        self.assertIn("Kids &lt;A&gt;", text)
        self.assertIn("Reservations cancelled: <b>4</b>", text)
        self.assertIn("Power outage", text)
