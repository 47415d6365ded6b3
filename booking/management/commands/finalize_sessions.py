from django.core.management.base import BaseCommand, CommandError
from django.db.models import Q
from django.utils import timezone

from booking import services
from booking.models import Reservation
from schedule.models import Session


class Command(BaseCommand):
    help = "Mark no-shows and close waitlists of finished sessions (safe to re-run)"

    def add_arguments(self, parser):
        parser.add_argument(
            "--close-ended",
            action="store_true",
            help="First mark scheduled/in-progress sessions whose end time passed as finished",
        )
        parser.add_argument("--session", type=int, help="Finalize only this session id")

    def handle(self, *args, **opts):
        now = timezone.now()

        if opts["close_ended"]:
            ended = Session.objects.filter(
                status__in=[Session.Status.SCHEDULED, Session.Status.IN_PROGRESS],
                end_at__lte=now,
            )
            if opts["session"]:
                ended = ended.filter(pk=opts["session"])
            closed = ended.update(status=Session.Status.FINISHED)
            self.stdout.write(f"Sessions marked finished: {closed}")

        if opts["session"]:
            if not Session.objects.filter(pk=opts["session"]).exists():
                raise CommandError(f"Session not found: {opts['session']}")
            sessions = Session.objects.filter(pk=opts["session"])
        else:
            open_statuses = [Reservation.Status.CONFIRMED, Reservation.Status.WAITLISTED]
            sessions = (
                Session.objects
                .filter(status=Session.Status.FINISHED)
                .filter(Q(reservations__status__in=open_statuses))
                .distinct()
            )

        absent = 0
        closed_waitlist = 0
        for s in sessions.order_by("start_at"):
            result = services.finalize_session(s.pk, now=now)
            if not result.ok:
                self.stderr.write(f"Session {s.pk}: {result.error.message}")
                continue
            absent += len(result.absent_marked)
            closed_waitlist += len(result.waitlist_closed)

        self.stdout.write(self.style.SUCCESS(
            f"No-shows marked: {absent}; waitlist entries closed: {closed_waitlist}"
        ))
