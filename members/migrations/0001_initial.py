from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Member",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("full_name", models.CharField(max_length=120, verbose_name="Full name")),
                ("group", models.CharField(choices=[("adult", "Adult"), ("kids", "Kids")], db_index=True, default="adult", max_length=8, verbose_name="Group")),
                ("belt", models.CharField(choices=[("white", "White"), ("grey", "Grey"), ("yellow", "Yellow"), ("orange", "Orange"), ("green", "Green"), ("blue", "Blue"), ("purple", "Purple"), ("brown", "Brown"), ("black", "Black"), ("coral", "Coral"), ("red", "Red")], db_index=True, default="white", max_length=12, verbose_name="Belt")),
                ("status", models.CharField(choices=[("active", "Active"), ("inactive", "Inactive"), ("suspended", "Suspended"), ("locked", "Locked")], db_index=True, default="active", max_length=12, verbose_name="Status")),
                ("checkin_blocked", models.BooleanField(default=False, verbose_name="Check-in blocked")),
                ("block_reason", models.CharField(blank=True, default="", max_length=200, verbose_name="Block reason")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("user", models.OneToOneField(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name="member", to=settings.AUTH_USER_MODEL, verbose_name="User")),
            ],
            options={
                "verbose_name": "Member",
                "verbose_name_plural": "Members",
                "ordering": ["full_name"],
            },
        ),
    ]
