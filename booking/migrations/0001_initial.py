from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("members", "0001_initial"),
        ("schedule", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Reservation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("kind", models.CharField(choices=[("normal", "Normal"), ("exempt_walkin", "Exempt walk-in"), ("makeup", "Make-up"), ("courtesy", "Courtesy")], default="normal", max_length=16, verbose_name="Kind")),
                ("status", models.CharField(choices=[("waitlisted", "Waitlisted"), ("confirmed", "Confirmed"), ("checked_in", "Checked in"), ("cancelled", "Cancelled"), ("no_show", "No-show")], db_index=True, default="confirmed", max_length=16, verbose_name="Status")),
                ("source", models.CharField(choices=[("app", "App"), ("web", "Web"), ("admin", "Admin"), ("api", "API")], default="api", max_length=8, verbose_name="Source")),
                ("waitlist_position", models.PositiveIntegerField(blank=True, null=True, verbose_name="Waitlist position")),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now, verbose_name="Requested")),
                ("promoted_at", models.DateTimeField(blank=True, null=True, verbose_name="Promoted")),
                ("checked_in_at", models.DateTimeField(blank=True, null=True, verbose_name="Checked in")),
                ("cancelled_at", models.DateTimeField(blank=True, null=True, verbose_name="Cancelled")),
                ("cancel_reason", models.CharField(blank=True, default="", max_length=200, verbose_name="Cancel reason")),
                ("cancelled_by_role", models.CharField(blank=True, default="", max_length=16, verbose_name="Cancelled by")),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="reservations", to="members.member", verbose_name="Member")),
                ("session", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="reservations", to="schedule.session", verbose_name="Session")),
            ],
            options={
                "verbose_name": "Reservation",
                "verbose_name_plural": "Reservations",
                "ordering": ["session", "created_at", "id"],
                "indexes": [
                    models.Index(fields=["session", "status"], name="resv_sess_status_idx"),
                    models.Index(fields=["member", "status"], name="resv_member_status_idx"),
                    models.Index(fields=["session", "waitlist_position"], name="resv_sess_wait_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("status", "cancelled"), _negated=True), fields=("session", "member"), name="uniq_active_reservation"),
                ],
            },
        ),
        migrations.CreateModel(
            name="AttendanceRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("mode", models.CharField(choices=[("scheduled", "Scheduled"), ("walk_in", "Walk-in")], default="scheduled", max_length=12, verbose_name="Mode")),
                ("status", models.CharField(choices=[("present", "Present"), ("absent", "Absent"), ("late", "Late"), ("early_leave", "Early leave")], db_index=True, max_length=12, verbose_name="Status")),
                ("check_in_at", models.DateTimeField(blank=True, null=True, verbose_name="Check-in")),
                ("check_out_at", models.DateTimeField(blank=True, null=True, verbose_name="Check-out")),
                ("duration_min", models.PositiveIntegerField(blank=True, null=True, verbose_name="Stayed, min")),
                ("note", models.CharField(blank=True, default="", max_length=300, verbose_name="Note")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("member", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="attendance_records", to="members.member", verbose_name="Member")),
                ("reservation", models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name="attendance", to="booking.reservation", verbose_name="Reservation")),
                ("session", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="attendance_records", to="schedule.session", verbose_name="Session")),
            ],
            options={
                "verbose_name": "Attendance record",
                "verbose_name_plural": "Attendance records",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["session", "status"], name="att_sess_status_idx"),
                    models.Index(fields=["member", "created_at"], name="att_member_created_idx"),
                ],
            },
        ),
    ]
