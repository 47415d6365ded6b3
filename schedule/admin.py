from datetime import datetime, timedelta

from django.contrib import admin, messages
from django.utils import timezone

from booking import services
from booking.models import Reservation

from .models import DojoClass, Session


@admin.register(DojoClass)
class DojoClassAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "name",
        "group",
        "capacity",
        "allow_waitlist",
        "is_active",
        "cancellation_cutoff_min",
    )
    list_filter = ("group", "is_active", "allow_waitlist")
    search_fields = ("name",)
    ordering = ("name",)


class ReservationInline(admin.TabularInline):
    model = Reservation
    extra = 0
    can_delete = False
    show_change_link = True
    fields = ("member", "kind", "status", "waitlist_position", "created_at", "checked_in_at", "cancelled_at")
    readonly_fields = fields
    ordering = ("created_at", "id")

    # reservations change only through booking.services
    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Session)
class SessionAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "start_at",
        "dojo_class",
        "status",
        "effective_capacity",
        "confirmed_count",
        "exempt_count",
        "waitlisted_count",
        "checked_in_count",
        "no_show_count",
    )
    list_filter = ("status", "dojo_class")
    search_fields = ("dojo_class__name",)
    autocomplete_fields = ("dojo_class",)
    ordering = ("start_at",)
    date_hierarchy = "start_at"
    readonly_fields = (
        "confirmed_count",
        "exempt_count",
        "waitlisted_count",
        "checked_in_count",
        "no_show_count",
    )
    inlines = (ReservationInline,)
    actions = ("finish_and_finalize", "cancel_sessions")

    def get_changeform_initial_data(self, request):
        initial = super().get_changeform_initial_data(request)

        day = request.GET.get("day") or request.GET.get("date")
        start = request.GET.get("start") or request.GET.get("time")
        duration = request.GET.get("duration") or "60"

        if day and start:
            try:
                naive = datetime.strptime(f"{day} {start}", "%Y-%m-%d %H:%M")
                minutes = int(duration)
            except ValueError:
                return initial
            start_at = timezone.make_aware(naive, timezone.get_current_timezone())
            initial["date"] = start_at.date()
            initial["start_at"] = start_at
            initial["end_at"] = start_at + timedelta(minutes=minutes)

        return initial

    @admin.display(description="Capacity")
    def effective_capacity(self, obj: Session):
        return obj.effective_capacity

    def save_model(self, request, obj, form, change):
        if change and "capacity_override" in form.changed_data:
            # seat changes go through the ledger so the waitlist moves up
            capacity = form.cleaned_data.get("capacity_override")
            form.changed_data.remove("capacity_override")
            obj.capacity_override = Session.objects.values_list("capacity_override", flat=True).get(pk=obj.pk)
            super().save_model(request, obj, form, change)
            result = services.resize_session(obj.pk, capacity)
            if not result.ok:
                messages.error(request, result.error.message)
            elif result.promoted:
                messages.info(request, f"Promoted from the waitlist: {len(result.promoted)}")
            obj.refresh_from_db()
            return
        super().save_model(request, obj, form, change)

    @admin.action(description="Finish and mark no-shows")
    def finish_and_finalize(self, request, queryset):
        done = 0
        for s in queryset:
            s.finish()
            result = services.finalize_session(s.pk)
            if result.ok:
                done += 1
            else:
                messages.error(request, f"{s}: {result.error.message}")
        if done:
            messages.success(request, f"Finalized sessions: {done}")

    @admin.action(description="Cancel sessions")
    def cancel_sessions(self, request, queryset):
        for s in queryset:
            result = services.cancel_session(s.pk, "Cancelled by staff")
            if not result.ok:
                messages.error(request, f"{s}: {result.error.message}")
