from django.conf import settings
from django.db import models


class Member(models.Model):
    class Group(models.TextChoices):
        ADULT = "adult", "Adult"
        KIDS = "kids", "Kids"

    class Belt(models.TextChoices):
        WHITE = "white", "White"
        GREY = "grey", "Grey"
        YELLOW = "yellow", "Yellow"
        ORANGE = "orange", "Orange"
        GREEN = "green", "Green"
        BLUE = "blue", "Blue"
        PURPLE = "purple", "Purple"
        BROWN = "brown", "Brown"
        BLACK = "black", "Black"
        CORAL = "coral", "Coral"
        RED = "red", "Red"

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        INACTIVE = "inactive", "Inactive"
        SUSPENDED = "suspended", "Suspended"
        LOCKED = "locked", "Locked"

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        verbose_name="User",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="member",
    )
    full_name = models.CharField("Full name", max_length=120)
    group = models.CharField("Group", max_length=8, choices=Group.choices, default=Group.ADULT, db_index=True)
    belt = models.CharField("Belt", max_length=12, choices=Belt.choices, default=Belt.WHITE, db_index=True)
    status = models.CharField("Status", max_length=12, choices=Status.choices, default=Status.ACTIVE, db_index=True)

    # billing hold: set by the payments side when fees are overdue
    checkin_blocked = models.BooleanField("Check-in blocked", default=False)
    block_reason = models.CharField("Block reason", max_length=200, blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Member"
        verbose_name_plural = "Members"
        ordering = ["full_name"]

    def __str__(self) -> str:
        return self.full_name or f"Member #{self.pk}"

    @property
    def is_active(self) -> bool:
        return self.status == self.Status.ACTIVE

    @property
    def is_exempt_rank(self) -> bool:
        return self.belt in getattr(settings, "ACADEMY_EXEMPT_BELTS", [])

    def block_checkin(self, reason: str = "") -> None:
        self.checkin_blocked = True
        self.block_reason = (reason or "")[:200]
        self.save(update_fields=["checkin_blocked", "block_reason"])

    def unblock_checkin(self) -> None:
        if not self.checkin_blocked and not self.block_reason:
            return
        self.checkin_blocked = False
        self.block_reason = ""
        self.save(update_fields=["checkin_blocked", "block_reason"])
