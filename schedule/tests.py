from datetime import datetime, timedelta

from django.core.exceptions import ValidationError
from django.test import TestCase, override_settings
from django.utils import timezone

from .models import DojoClass, Session


START = timezone.make_aware(datetime(2030, 3, 4, 19, 30))


class SessionTests(TestCase):
    def setUp(self):
        self.dojo_class = DojoClass.objects.create(name="Gi advanced", capacity=12)

    def make(self, start=START, minutes=90, **kwargs):
        return Session(
            dojo_class=self.dojo_class,
            date=timezone.localtime(start).date(),
            start_at=start,
            end_at=start + timedelta(minutes=minutes),
            **kwargs,
        )

    def test_capacity_override(self):
        s = self.make()
        self.assertEqual(s.effective_capacity, 12)
        self.assertEqual(s.seats_left, 12)

        s.capacity_override = 4
        s.confirmed_count = 4
        s.exempt_count = 1
        self.assertEqual(s.effective_capacity, 4)
        self.assertTrue(s.is_full)
        self.assertEqual(s.seats_left, 0)
        self.assertEqual(s.occupancy, 5)
        self.assertEqual(s.duration_min, 90)

    def test_zero_override_closes_the_session(self):
        s = self.make(capacity_override=0)
        self.assertEqual(s.effective_capacity, 0)
        self.assertTrue(s.is_full)

    def test_clean_rejects_bad_times(self):
        s = self.make(minutes=0)
        with self.assertRaises(ValidationError):
            s.clean()

        s = self.make()
        s.date = s.date + timedelta(days=1)
        with self.assertRaises(ValidationError):
            s.clean()

    def test_clean_rejects_overlap_in_same_class(self):
        self.make().save()

        overlapping = self.make(start=START + timedelta(minutes=30))
        with self.assertRaises(ValidationError):
            overlapping.clean()

        after = self.make(start=START + timedelta(minutes=90))
        after.clean()

    def test_cancelled_session_does_not_block_slot(self):
        self.make(status=Session.Status.CANCELLED).save()
        self.make().clean()

    def test_status_changes(self):
        s = self.make()
        s.save()

        s.start()
        self.assertEqual(s.status, Session.Status.IN_PROGRESS)
        s.postpone()
        self.assertEqual(s.status, Session.Status.IN_PROGRESS)
        s.finish()
        s.refresh_from_db()
        self.assertEqual(s.status, Session.Status.FINISHED)

        s.start()
        self.assertEqual(s.status, Session.Status.FINISHED)

    def test_has_started(self):
        s = self.make()
        self.assertFalse(s.has_started(START - timedelta(seconds=1)))
        self.assertTrue(s.has_started(START))


class DojoClassTests(TestCase):
    @override_settings(
        ACADEMY_CHECKIN_OPENS_BEFORE_MIN=15,
        ACADEMY_CHECKIN_CLOSES_AFTER_MIN=30,
        ACADEMY_CANCELLATION_CUTOFF_MIN=120,
    )
    def test_settings_fallbacks(self):
        c = DojoClass(name="No-gi")
        self.assertEqual(c.checkin_offsets, (15, 30))
        self.assertEqual(c.cancellation_cutoff, 120)

        c.checkin_closes_after_min = 0
        c.cancellation_cutoff_min = 60
        self.assertEqual(c.checkin_offsets, (15, 0))
        self.assertEqual(c.cancellation_cutoff, 60)
