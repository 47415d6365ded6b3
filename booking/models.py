from django.db import models
from django.db.models import Q
from django.utils import timezone

from members.models import Member
from schedule.models import Session


class Reservation(models.Model):
    class Kind(models.TextChoices):
        NORMAL = "normal", "Normal"
        EXEMPT_WALKIN = "exempt_walkin", "Exempt walk-in"
        MAKEUP = "makeup", "Make-up"
        COURTESY = "courtesy", "Courtesy"

    class Status(models.TextChoices):
        WAITLISTED = "waitlisted", "Waitlisted"
        CONFIRMED = "confirmed", "Confirmed"
        CHECKED_IN = "checked_in", "Checked in"
        CANCELLED = "cancelled", "Cancelled"
        NO_SHOW = "no_show", "No-show"

    class Source(models.TextChoices):
        APP = "app", "App"
        WEB = "web", "Web"
        ADMIN = "admin", "Admin"
        API = "api", "API"

    TERMINAL = (Status.CHECKED_IN, Status.CANCELLED, Status.NO_SHOW)
    SEAT_HOLDING = (Status.CONFIRMED, Status.CHECKED_IN)

    session = models.ForeignKey(
        Session,
        verbose_name="Session",
        on_delete=models.PROTECT,
        related_name="reservations",
        db_index=True,
    )
    member = models.ForeignKey(
        Member,
        verbose_name="Member",
        on_delete=models.PROTECT,
        related_name="reservations",
        db_index=True,
    )

    kind = models.CharField("Kind", max_length=16, choices=Kind.choices, default=Kind.NORMAL)
    status = models.CharField(
        "Status",
        max_length=16,
        choices=Status.choices,
        default=Status.CONFIRMED,
        db_index=True,
    )
    source = models.CharField("Source", max_length=8, choices=Source.choices, default=Source.API)

    # dense 1..N among the waitlisted reservations of a session, else NULL
    waitlist_position = models.PositiveIntegerField("Waitlist position", null=True, blank=True)

    # request time; drives waitlist order
    created_at = models.DateTimeField("Requested", default=timezone.now, db_index=True)
    promoted_at = models.DateTimeField("Promoted", null=True, blank=True)
    checked_in_at = models.DateTimeField("Checked in", null=True, blank=True)

    cancelled_at = models.DateTimeField("Cancelled", null=True, blank=True)
    cancel_reason = models.CharField("Cancel reason", max_length=200, blank=True, default="")
    cancelled_by_role = models.CharField("Cancelled by", max_length=16, blank=True, default="")

    class Meta:
        verbose_name = "Reservation"
        verbose_name_plural = "Reservations"
        ordering = ["session", "created_at", "id"]
        constraints = [
            models.UniqueConstraint(
                fields=["session", "member"],
                condition=~Q(status="cancelled"),
                name="uniq_active_reservation",
            ),
        ]
        indexes = [
            models.Index(fields=["session", "status"], name="resv_sess_status_idx"),
            models.Index(fields=["member", "status"], name="resv_member_status_idx"),
            models.Index(fields=["session", "waitlist_position"], name="resv_sess_wait_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.member} → {self.session} ({self.status})"

    @property
    def is_active(self) -> bool:
        return self.status != self.Status.CANCELLED

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL

    @property
    def is_exempt(self) -> bool:
        return self.kind == self.Kind.EXEMPT_WALKIN

    @property
    def holds_seat(self) -> bool:
        return self.status in self.SEAT_HOLDING


class AttendanceRecord(models.Model):
    class Mode(models.TextChoices):
        SCHEDULED = "scheduled", "Scheduled"
        WALK_IN = "walk_in", "Walk-in"

    class Status(models.TextChoices):
        PRESENT = "present", "Present"
        ABSENT = "absent", "Absent"
        LATE = "late", "Late"
        EARLY_LEAVE = "early_leave", "Early leave"

    # one record per reservation outcome
    reservation = models.OneToOneField(
        Reservation,
        verbose_name="Reservation",
        on_delete=models.PROTECT,
        related_name="attendance",
    )
    session = models.ForeignKey(
        Session,
        verbose_name="Session",
        on_delete=models.PROTECT,
        related_name="attendance_records",
        db_index=True,
    )
    member = models.ForeignKey(
        Member,
        verbose_name="Member",
        on_delete=models.PROTECT,
        related_name="attendance_records",
        db_index=True,
    )

    mode = models.CharField("Mode", max_length=12, choices=Mode.choices, default=Mode.SCHEDULED)
    status = models.CharField("Status", max_length=12, choices=Status.choices, db_index=True)

    check_in_at = models.DateTimeField("Check-in", null=True, blank=True)
    check_out_at = models.DateTimeField("Check-out", null=True, blank=True)
    duration_min = models.PositiveIntegerField("Stayed, min", null=True, blank=True)
    note = models.CharField("Note", max_length=300, blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Attendance record"
        verbose_name_plural = "Attendance records"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["session", "status"], name="att_sess_status_idx"),
            models.Index(fields=["member", "created_at"], name="att_member_created_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.member} @ {self.session}: {self.status}"

    @property
    def minutes_late(self) -> int:
        if not self.check_in_at or self.check_in_at <= self.session.start_at:
            return 0
        return int((self.check_in_at - self.session.start_at).total_seconds() // 60)
