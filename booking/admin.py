from django.contrib import admin, messages

from . import services
from .models import AttendanceRecord, Reservation


@admin.register(Reservation)
class ReservationAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "member",
        "session",
        "kind",
        "status",
        "waitlist_position",
        "source",
        "created_at",
    )
    list_filter = ("status", "kind", "source", "session__dojo_class")
    search_fields = ("member__full_name", "session__dojo_class__name")
    readonly_fields = (
        "session",
        "member",
        "kind",
        "status",
        "waitlist_position",
        "created_at",
        "promoted_at",
        "checked_in_at",
        "cancelled_at",
        "cancel_reason",
        "cancelled_by_role",
    )
    actions = ("cancel_selected", "check_in_selected")

    def has_add_permission(self, request):
        # new reservations must pass eligibility and the ledger
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def _apply(self, request, queryset, op, label):
        ok = 0
        for r in queryset:
            result = op(r.pk)
            if result.ok:
                ok += 1
            else:
                messages.error(request, f"#{r.pk}: {result.error.message}")
        if ok:
            messages.success(request, f"{label}: {ok}")

    @admin.action(description="Cancel (ignores the cutoff)")
    def cancel_selected(self, request, queryset):
        self._apply(
            request,
            queryset,
            lambda pk: services.cancel_reservation(pk, services.ROLE_ADMIN, "Cancelled by staff"),
            "Cancelled",
        )

    @admin.action(description="Check in")
    def check_in_selected(self, request, queryset):
        self._apply(request, queryset, services.check_in, "Checked in")


@admin.register(AttendanceRecord)
class AttendanceRecordAdmin(admin.ModelAdmin):
    list_display = ("id", "member", "session", "mode", "status", "check_in_at", "check_out_at", "duration_min")
    list_filter = ("status", "mode", "session__dojo_class")
    search_fields = ("member__full_name", "session__dojo_class__name")
    readonly_fields = ("reservation", "session", "member", "check_in_at", "check_out_at", "duration_min", "created_at")

    def has_add_permission(self, request):
        return False
