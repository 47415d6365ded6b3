from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone


class DojoClass(models.Model):
    """Recurring class (template): who may join and how booking works."""

    class Group(models.TextChoices):
        ADULT = "adult", "Adult"
        KIDS = "kids", "Kids"
        BOTH = "both", "Both"

    name = models.CharField("Name", max_length=100)
    group = models.CharField("Group", max_length=8, choices=Group.choices, default=Group.ADULT, db_index=True)
    capacity = models.PositiveIntegerField("Capacity", default=30)

    # empty list means every belt is welcome
    allowed_belts = models.JSONField("Allowed belts", default=list, blank=True)

    is_active = models.BooleanField("Active", default=True, db_index=True)
    allow_waitlist = models.BooleanField("Waitlist allowed", default=True)

    # per-class overrides; None falls back to the ACADEMY_* settings
    checkin_opens_before_min = models.PositiveIntegerField("Check-in opens, min before", null=True, blank=True)
    checkin_closes_after_min = models.PositiveIntegerField("Check-in closes, min after", null=True, blank=True)
    cancellation_cutoff_min = models.PositiveIntegerField("Cancellation cutoff, min", null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Class"
        verbose_name_plural = "Classes"
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name

    @property
    def checkin_offsets(self) -> tuple[int, int]:
        opens = self.checkin_opens_before_min
        closes = self.checkin_closes_after_min
        if opens is None:
            opens = settings.ACADEMY_CHECKIN_OPENS_BEFORE_MIN
        if closes is None:
            closes = settings.ACADEMY_CHECKIN_CLOSES_AFTER_MIN
        return int(opens), int(closes)

    @property
    def cancellation_cutoff(self) -> int:
        if self.cancellation_cutoff_min is None:
            return int(settings.ACADEMY_CANCELLATION_CUTOFF_MIN)
        return int(self.cancellation_cutoff_min)


class Session(models.Model):
    class Status(models.TextChoices):
        SCHEDULED = "scheduled", "Scheduled"
        IN_PROGRESS = "in_progress", "In progress"
        FINISHED = "finished", "Finished"
        CANCELLED = "cancelled", "Cancelled"
        POSTPONED = "postponed", "Postponed"

    dojo_class = models.ForeignKey(
        DojoClass,
        verbose_name="Class",
        on_delete=models.PROTECT,
        related_name="sessions",
        db_index=True,
    )

    date = models.DateField("Date", db_index=True)
    start_at = models.DateTimeField("Starts at", db_index=True)
    end_at = models.DateTimeField("Ends at")

    capacity_override = models.PositiveIntegerField("Capacity override", null=True, blank=True)

    status = models.CharField(
        "Status",
        max_length=16,
        choices=Status.choices,
        default=Status.SCHEDULED,
        db_index=True,
    )
    cancel_reason = models.CharField("Cancel reason", max_length=200, blank=True, default="")

    # Counters below are written only by the booking engine, inside the
    # transaction that changes the reservation.
    # seats held by capped reservations (confirmed or checked in, not exempt)
    confirmed_count = models.PositiveIntegerField("Seats taken", default=0)
    # exempt walk-ins, never gated by capacity
    exempt_count = models.PositiveIntegerField("Exempt walk-ins", default=0)
    waitlisted_count = models.PositiveIntegerField("Waitlisted", default=0)
    checked_in_count = models.PositiveIntegerField("Checked in", default=0)
    no_show_count = models.PositiveIntegerField("No-shows", default=0)

    class Meta:
        verbose_name = "Session"
        verbose_name_plural = "Sessions"
        ordering = ["start_at"]
        indexes = [
            models.Index(fields=["dojo_class", "start_at"], name="sess_class_start_idx"),
            models.Index(fields=["status", "end_at"], name="sess_status_end_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.dojo_class}, {timezone.localtime(self.start_at).strftime('%d.%m %H:%M')}"

    def clean(self):
        super().clean()

        if not self.start_at or not self.end_at:
            return

        if self.end_at <= self.start_at:
            raise ValidationError({"end_at": "End time must be after the start time."})

        if self.date and self.date != timezone.localtime(self.start_at).date():
            raise ValidationError({"date": "Date must match the start time."})

        if not self.dojo_class_id:
            return

        overlapping = (
            Session.objects
            .filter(dojo_class_id=self.dojo_class_id, start_at__lt=self.end_at, end_at__gt=self.start_at)
            .exclude(pk=self.pk)
            .exclude(status=self.Status.CANCELLED)
            .order_by("start_at")
            .first()
        )
        if overlapping:
            other_start = timezone.localtime(overlapping.start_at)
            other_end = timezone.localtime(overlapping.end_at)
            raise ValidationError({
                "start_at": (
                    "This class already has a session at "
                    f"{other_start.strftime('%d.%m %H:%M')}–{other_end.strftime('%H:%M')}."
                )
            })

    @property
    def effective_capacity(self) -> int:
        if self.capacity_override is not None:
            return int(self.capacity_override)
        return int(self.dojo_class.capacity or 0)

    @property
    def seats_left(self) -> int:
        return max(0, self.effective_capacity - int(self.confirmed_count))

    @property
    def is_full(self) -> bool:
        """Hard cap for ordinary members; exempt walk-ins do not count."""
        return int(self.confirmed_count) >= self.effective_capacity

    @property
    def occupancy(self) -> int:
        return int(self.confirmed_count) + int(self.exempt_count)

    @property
    def duration_min(self) -> int:
        if not self.start_at or not self.end_at:
            return 0
        return max(0, int((self.end_at - self.start_at).total_seconds() // 60))

    def has_started(self, now=None) -> bool:
        now = now or timezone.now()
        return now >= self.start_at

    def _set_status(self, status: str) -> None:
        self.status = status
        self.save(update_fields=["status"])

    def start(self):
        if self.status == self.Status.SCHEDULED:
            self._set_status(self.Status.IN_PROGRESS)

    def finish(self):
        if self.status in (self.Status.SCHEDULED, self.Status.IN_PROGRESS):
            self._set_status(self.Status.FINISHED)

    def postpone(self):
        if self.status == self.Status.SCHEDULED:
            self._set_status(self.Status.POSTPONED)
