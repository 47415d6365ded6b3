from django.contrib import admin

from .models import Member


@admin.register(Member)
class MemberAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "full_name",
        "group",
        "belt",
        "status",
        "checkin_blocked",
        "user",
        "created_at",
    )
    list_filter = ("group", "belt", "status", "checkin_blocked")
    search_fields = ("full_name", "user__username", "user__email")
    autocomplete_fields = ("user",)
    ordering = ("full_name",)
    actions = ("unblock_selected",)

    @admin.action(description="Lift check-in block")
    def unblock_selected(self, request, queryset):
        for m in queryset:
            m.unblock_checkin()
