from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="DojoClass",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=100, verbose_name="Name")),
                ("group", models.CharField(choices=[("adult", "Adult"), ("kids", "Kids"), ("both", "Both")], db_index=True, default="adult", max_length=8, verbose_name="Group")),
                ("capacity", models.PositiveIntegerField(default=30, verbose_name="Capacity")),
                ("allowed_belts", models.JSONField(blank=True, default=list, verbose_name="Allowed belts")),
                ("is_active", models.BooleanField(db_index=True, default=True, verbose_name="Active")),
                ("allow_waitlist", models.BooleanField(default=True, verbose_name="Waitlist allowed")),
                ("checkin_opens_before_min", models.PositiveIntegerField(blank=True, null=True, verbose_name="Check-in opens, min before")),
                ("checkin_closes_after_min", models.PositiveIntegerField(blank=True, null=True, verbose_name="Check-in closes, min after")),
                ("cancellation_cutoff_min", models.PositiveIntegerField(blank=True, null=True, verbose_name="Cancellation cutoff, min")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "verbose_name": "Class",
                "verbose_name_plural": "Classes",
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="Session",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("date", models.DateField(db_index=True, verbose_name="Date")),
                ("start_at", models.DateTimeField(db_index=True, verbose_name="Starts at")),
                ("end_at", models.DateTimeField(verbose_name="Ends at")),
                ("capacity_override", models.PositiveIntegerField(blank=True, null=True, verbose_name="Capacity override")),
                ("status", models.CharField(choices=[("scheduled", "Scheduled"), ("in_progress", "In progress"), ("finished", "Finished"), ("cancelled", "Cancelled"), ("postponed", "Postponed")], db_index=True, default="scheduled", max_length=16, verbose_name="Status")),
                ("cancel_reason", models.CharField(blank=True, default="", max_length=200, verbose_name="Cancel reason")),
                ("confirmed_count", models.PositiveIntegerField(default=0, verbose_name="Seats taken")),
                ("exempt_count", models.PositiveIntegerField(default=0, verbose_name="Exempt walk-ins")),
                ("waitlisted_count", models.PositiveIntegerField(default=0, verbose_name="Waitlisted")),
                ("checked_in_count", models.PositiveIntegerField(default=0, verbose_name="Checked in")),
                ("no_show_count", models.PositiveIntegerField(default=0, verbose_name="No-shows")),
                ("dojo_class", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="sessions", to="schedule.dojoclass", verbose_name="Class")),
            ],
            options={
                "verbose_name": "Session",
                "verbose_name_plural": "Sessions",
                "ordering": ["start_at"],
                "indexes": [
                    models.Index(fields=["dojo_class", "start_at"], name="sess_class_start_idx"),
                    models.Index(fields=["status", "end_at"], name="sess_status_end_idx"),
                ],
            },
        ),
    ]
