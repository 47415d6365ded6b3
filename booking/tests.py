from datetime import datetime, timedelta
from io import StringIO
import threading
from unittest import mock, skipIf

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import OperationalError, connection
from django.test import TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from members.models import Member
from schedule.models import DojoClass, Session

from . import attendance, checkin, ledger, services, waitlist
from .eligibility import (
    BELT_NOT_ALLOWED,
    CHECKIN_BLOCKED,
    CLASS_INACTIVE,
    GROUP_MISMATCH,
    MEMBER_INACTIVE,
    NOT_EXEMPT_RANK,
    check_eligibility,
    check_exempt,
)
from .errors import OutsideCheckinWindow
from .models import AttendanceRecord, Reservation


START = timezone.make_aware(datetime(2030, 5, 10, 18, 0))
EARLY = START - timedelta(days=1)


def make_class(**kwargs) -> DojoClass:
    kwargs.setdefault("name", "Adult fundamentals")
    kwargs.setdefault("capacity", 2)
    return DojoClass.objects.create(**kwargs)


def make_session(dojo_class, start=START, minutes=60, **kwargs) -> Session:
    return Session.objects.create(
        dojo_class=dojo_class,
        date=timezone.localtime(start).date(),
        start_at=start,
        end_at=start + timedelta(minutes=minutes),
        **kwargs,
    )


def make_member(name, **kwargs) -> Member:
    return Member.objects.create(full_name=name, **kwargs)


class BookingTestCase(TestCase):
    def setUp(self):
        self.dojo_class = make_class()
        self.session = make_session(self.dojo_class)

    def book(self, member, when=EARLY, kind=Reservation.Kind.NORMAL, session=None):
        session = session or self.session
        return services.create_reservation(session.pk, member.pk, kind, now=when)

    def assertCounters(self, **expected):
        self.session.refresh_from_db()
        for name, value in expected.items():
            self.assertEqual(getattr(self.session, name), value, name)


class EligibilityTests(TestCase):
    def setUp(self):
        self.dojo_class = DojoClass(name="Kids", group=DojoClass.Group.KIDS, allowed_belts=["white", "grey"])
        self.member = Member(full_name="Kid", group=Member.Group.KIDS, belt=Member.Belt.WHITE)

    def test_eligible_member(self):
        result = check_eligibility(self.member, self.dojo_class)
        self.assertTrue(result.ok)
        self.assertTrue(result)

    def test_rules_are_checked_in_order(self):
        self.dojo_class.is_active = False
        self.member.group = Member.Group.ADULT
        self.assertEqual(check_eligibility(self.member, self.dojo_class).reason, CLASS_INACTIVE)

        self.dojo_class.is_active = True
        self.assertEqual(check_eligibility(self.member, self.dojo_class).reason, GROUP_MISMATCH)

        self.member.group = Member.Group.KIDS
        self.member.belt = Member.Belt.BLUE
        self.assertEqual(check_eligibility(self.member, self.dojo_class).reason, BELT_NOT_ALLOWED)

        self.member.belt = Member.Belt.GREY
        self.member.status = Member.Status.SUSPENDED
        self.assertEqual(check_eligibility(self.member, self.dojo_class).reason, MEMBER_INACTIVE)

        self.member.status = Member.Status.ACTIVE
        self.member.checkin_blocked = True
        self.member.block_reason = "Overdue fees"
        result = check_eligibility(self.member, self.dojo_class)
        self.assertFalse(result)
        self.assertEqual(result.reason, CHECKIN_BLOCKED)
        self.assertEqual(result.detail, "Overdue fees")

    def test_both_group_and_empty_whitelist_admit_everyone(self):
        open_class = DojoClass(name="Open mat", group=DojoClass.Group.BOTH, allowed_belts=[])
        adult = Member(full_name="Adult", group=Member.Group.ADULT, belt=Member.Belt.PURPLE)
        self.assertTrue(check_eligibility(adult, open_class).ok)
        self.assertTrue(check_eligibility(self.member, open_class).ok)

    def test_missing_inputs_are_rejected(self):
        with self.assertRaises(ValueError):
            check_eligibility(None, self.dojo_class)
        with self.assertRaises(ValueError):
            check_eligibility(self.member, None)

    @override_settings(ACADEMY_EXEMPT_BELTS=["black"])
    def test_exempt_rank(self):
        self.assertEqual(check_exempt(self.member).reason, NOT_EXEMPT_RANK)
        self.member.belt = Member.Belt.BLACK
        self.assertTrue(check_exempt(self.member).ok)


class LedgerTests(TestCase):
    def setUp(self):
        self.session = make_session(make_class(capacity=2))

    def test_reserve_stops_at_capacity(self):
        self.assertTrue(ledger.try_reserve(self.session.pk).granted)
        second = ledger.try_reserve(self.session.pk)
        self.assertTrue(second.granted)
        self.assertEqual(second.current_count, 2)

        third = ledger.try_reserve(self.session.pk)
        self.assertFalse(third.granted)
        self.assertEqual(third.current_count, 2)
        self.assertEqual(third.capacity, 2)

        self.session.refresh_from_db()
        self.assertEqual(self.session.confirmed_count, 2)
        self.assertTrue(self.session.is_full)

    def test_exempt_grant_bypasses_cap(self):
        ledger.try_reserve(self.session.pk)
        ledger.try_reserve(self.session.pk)

        grant = ledger.try_reserve(self.session.pk, exempt=True)
        self.assertTrue(grant.granted)
        self.assertTrue(grant.exempt)

        self.session.refresh_from_db()
        occ = ledger.occupancy(self.session)
        self.assertEqual((occ.capped, occ.exempt, occ.total), (2, 1, 3))
        self.assertTrue(occ.is_full)
        self.assertEqual(occ.seats_left, 0)

    def test_release_never_goes_below_zero(self):
        ledger.try_reserve(self.session.pk)
        self.assertEqual(ledger.release(self.session.pk), 0)
        self.assertEqual(ledger.release(self.session.pk), 0)
        self.assertEqual(ledger.release(self.session.pk, exempt=True), 0)

    def test_capacity_override_wins(self):
        self.session.capacity_override = 1
        self.session.save()
        self.assertTrue(ledger.try_reserve(self.session.pk).granted)
        self.assertFalse(ledger.try_reserve(self.session.pk).granted)

    def test_zero_override_is_not_class_capacity(self):
        self.session.capacity_override = 0
        self.session.save()

        self.assertEqual(self.session.effective_capacity, 0)
        self.assertFalse(ledger.try_reserve(self.session.pk).granted)


@override_settings(ACADEMY_LEDGER_MAX_ATTEMPTS=3)
class LockConflictRetryTests(BookingTestCase):
    def flaky_lock(self, fail_on):
        """lock_session that raises a lock timeout on the given call numbers."""
        real = ledger.lock_session
        calls = []

        def lock(session_id):
            calls.append(session_id)
            if len(calls) in fail_on:
                raise OperationalError("lock wait timeout exceeded")
            return real(session_id)

        return lock, calls

    def test_create_retries_when_session_lock_times_out(self):
        lock, calls = self.flaky_lock(fail_on={1})

        with mock.patch("booking.ledger.lock_session", side_effect=lock):
            with self.assertLogs("booking.ledger", level="WARNING"):
                result = self.book(make_member("Ana"))

        self.assertTrue(result.ok)
        self.assertEqual(result.status, Reservation.Status.CONFIRMED)
        self.assertGreater(len(calls), 1)
        self.assertEqual(Reservation.objects.count(), 1)
        self.assertCounters(confirmed_count=1)

    def test_failed_attempt_is_rolled_back_before_retry(self):
        real = ledger._reserve_once
        calls = []

        def take_seat_then_deadlock(session_id, exempt):
            grant = real(session_id, exempt)
            calls.append(grant)
            if len(calls) == 1:
                raise OperationalError("deadlock found when trying to get lock")
            return grant

        with mock.patch("booking.ledger._reserve_once", side_effect=take_seat_then_deadlock):
            result = self.book(make_member("Ana"))

        self.assertTrue(result.ok)
        self.assertEqual(len(calls), 2)
        self.assertEqual(calls[1].current_count, 1)
        self.assertCounters(confirmed_count=1)

    def test_cancel_retries_and_still_promotes(self):
        self.dojo_class.capacity = 1
        self.dojo_class.save()
        x = self.book(make_member("X")).reservation
        y = self.book(make_member("Y")).reservation
        lock, _ = self.flaky_lock(fail_on={1})

        with mock.patch("booking.ledger.lock_session", side_effect=lock):
            result = services.cancel_reservation(x.pk, services.ROLE_MEMBER, now=EARLY)

        self.assertTrue(result.ok)
        self.assertEqual([r.pk for r in result.promoted], [y.pk])
        self.assertCounters(confirmed_count=1, waitlisted_count=0)

    def test_gives_up_after_max_attempts(self):
        with mock.patch("booking.ledger.lock_session", side_effect=OperationalError("deadlock")) as m:
            with self.assertRaises(OperationalError):
                self.book(make_member("Ana"))

        self.assertEqual(m.call_count, 3)
        self.assertFalse(Reservation.objects.exists())


class CheckinWindowTests(TestCase):
    def test_window_is_closed_interval(self):
        self.assertTrue(checkin.is_within_window(START - timedelta(minutes=15), START, 15, 30))
        self.assertTrue(checkin.is_within_window(START + timedelta(minutes=30), START, 15, 30))
        self.assertFalse(checkin.is_within_window(START - timedelta(minutes=16), START, 15, 30))
        self.assertFalse(checkin.is_within_window(START + timedelta(minutes=31), START, 15, 30))

    def test_negative_offsets_are_rejected(self):
        with self.assertRaises(ValueError):
            checkin.checkin_window(START, -1, 30)

    @override_settings(ACADEMY_CHECKIN_OPENS_BEFORE_MIN=15, ACADEMY_CHECKIN_CLOSES_AFTER_MIN=30)
    def test_class_overrides_settings(self):
        session = make_session(make_class(checkin_opens_before_min=45))
        opens_at, closes_at = checkin.window_for_session(session)
        self.assertEqual(opens_at, START - timedelta(minutes=45))
        self.assertEqual(closes_at, START + timedelta(minutes=30))

    @override_settings(ACADEMY_CHECKIN_OPENS_BEFORE_MIN=15)
    def test_ensure_open_reports_window(self):
        session = make_session(make_class())
        with self.assertRaises(OutsideCheckinWindow) as cm:
            checkin.ensure_checkin_open(session, START - timedelta(minutes=20))
        self.assertEqual(cm.exception.context["opens_at"], (START - timedelta(minutes=15)).isoformat())


class CreateReservationTests(BookingTestCase):
    def test_confirmed_while_seats_left(self):
        result = self.book(make_member("Ana"))

        self.assertTrue(result.ok)
        self.assertEqual(result.status, Reservation.Status.CONFIRMED)
        self.assertIsNone(result.reservation.waitlist_position)
        self.assertEqual(result.reservation.created_at, EARLY)
        self.assertCounters(confirmed_count=1, waitlisted_count=0)

    def test_waitlisted_when_full(self):
        self.book(make_member("Ana"))
        self.book(make_member("Bia"))

        result = self.book(make_member("Caio"))

        self.assertTrue(result.ok)
        self.assertTrue(result.waitlisted)
        self.assertEqual(result.reservation.waitlist_position, 1)
        self.assertCounters(confirmed_count=2, waitlisted_count=1)

    def test_full_without_waitlist(self):
        self.dojo_class.allow_waitlist = False
        self.dojo_class.save()
        self.book(make_member("Ana"))
        self.book(make_member("Bia"))

        result = self.book(make_member("Caio"))

        self.assertFalse(result.ok)
        self.assertEqual(result.error_code, "session_full")
        self.assertEqual(Reservation.objects.count(), 2)
        self.assertCounters(confirmed_count=2, waitlisted_count=0)

    def test_duplicate_active_reservation(self):
        ana = make_member("Ana")
        self.book(ana)

        result = self.book(ana, when=EARLY + timedelta(minutes=1))

        self.assertFalse(result.ok)
        self.assertEqual(result.error_code, "duplicate_reservation")
        self.assertCounters(confirmed_count=1)

    def test_rebook_after_cancel(self):
        ana = make_member("Ana")
        first = self.book(ana)
        services.cancel_reservation(first.reservation.pk, services.ROLE_MEMBER, now=EARLY)

        again = self.book(ana, when=EARLY + timedelta(minutes=5))

        self.assertTrue(again.ok)
        self.assertNotEqual(again.reservation.pk, first.reservation.pk)
        self.assertCounters(confirmed_count=1)

    def test_not_eligible(self):
        kid = make_member("Kid", group=Member.Group.KIDS)

        result = self.book(kid)

        self.assertFalse(result.ok)
        self.assertEqual(result.error_code, "not_eligible")
        self.assertEqual(result.error.context["reason"], GROUP_MISMATCH)
        self.assertFalse(Reservation.objects.exists())

    def test_session_not_bookable_once_started(self):
        result = self.book(make_member("Ana"), when=START)
        self.assertEqual(result.error_code, "session_not_bookable")

        self.session.status = Session.Status.CANCELLED
        self.session.save()
        result = self.book(make_member("Bia"))
        self.assertEqual(result.error_code, "session_not_bookable")

    def test_unknown_ids(self):
        ana = make_member("Ana")
        self.assertEqual(services.create_reservation(999999, ana.pk, now=EARLY).error_code, "not_found")
        self.assertEqual(services.create_reservation(self.session.pk, 999999, now=EARLY).error_code, "not_found")

    def test_unknown_kind_is_a_programming_error(self):
        with self.assertRaises(ValueError):
            services.create_reservation(self.session.pk, make_member("Ana").pk, "vip", now=EARLY)


@override_settings(ACADEMY_EXEMPT_BELTS=["black", "coral", "red"])
class ExemptWalkinTests(BookingTestCase):
    def setUp(self):
        super().setUp()
        self.dojo_class.capacity = 1
        self.dojo_class.save()
        self.book(make_member("Ana"))

    def test_exempt_confirmed_at_capacity(self):
        master = make_member("Master", belt=Member.Belt.BLACK)

        result = self.book(master, kind=Reservation.Kind.EXEMPT_WALKIN)

        self.assertTrue(result.ok)
        self.assertEqual(result.status, Reservation.Status.CONFIRMED)
        self.assertCounters(confirmed_count=1, exempt_count=1)

        # the cap still blocks ordinary members
        follow = self.book(make_member("Bia"))
        self.assertTrue(follow.waitlisted)

    def test_exempt_requires_senior_rank(self):
        result = self.book(make_member("Bia", belt=Member.Belt.BLUE), kind=Reservation.Kind.EXEMPT_WALKIN)

        self.assertFalse(result.ok)
        self.assertEqual(result.error.context["reason"], NOT_EXEMPT_RANK)

    def test_exempt_cancel_frees_no_capped_seat(self):
        bia = self.book(make_member("Bia"))
        master = self.book(make_member("Master", belt=Member.Belt.RED), kind=Reservation.Kind.EXEMPT_WALKIN)

        result = services.cancel_reservation(master.reservation.pk, services.ROLE_MEMBER, now=EARLY)

        self.assertTrue(result.ok)
        self.assertEqual(result.promoted, [])
        bia.reservation.refresh_from_db()
        self.assertEqual(bia.reservation.status, Reservation.Status.WAITLISTED)
        self.assertCounters(confirmed_count=1, exempt_count=0, waitlisted_count=1)

    def test_exempt_checkin_is_walk_in(self):
        master = self.book(make_member("Master", belt=Member.Belt.CORAL), kind=Reservation.Kind.EXEMPT_WALKIN)

        result = services.check_in(master.reservation.pk, now=START)

        self.assertEqual(result.attendance.mode, AttendanceRecord.Mode.WALK_IN)


class WaitlistTests(BookingTestCase):
    def setUp(self):
        super().setUp()
        self.dojo_class.capacity = 1
        self.dojo_class.save()
        self.holder = self.book(make_member("Holder")).reservation
        self.a = self.book(make_member("A"), when=EARLY + timedelta(seconds=1)).reservation
        self.b = self.book(make_member("B"), when=EARLY + timedelta(seconds=2)).reservation
        self.c = self.book(make_member("C"), when=EARLY + timedelta(seconds=3)).reservation

    def positions(self):
        return [pos for _, pos in waitlist.positions(self.session)]

    def test_positions_follow_arrival(self):
        self.assertEqual(
            [self.a.waitlist_position, self.b.waitlist_position, self.c.waitlist_position],
            [1, 2, 3],
        )

    def test_cancel_in_the_middle_keeps_positions_dense(self):
        services.cancel_reservation(self.b.pk, services.ROLE_MEMBER, now=START)

        self.assertEqual(waitlist.positions(self.session), [(self.a.pk, 1), (self.c.pk, 2)])
        self.b.refresh_from_db()
        self.assertIsNone(self.b.waitlist_position)
        self.assertEqual(self.b.status, Reservation.Status.CANCELLED)
        self.assertCounters(waitlisted_count=2, confirmed_count=1)

    def test_two_free_seats_promote_in_order(self):
        result = services.resize_session(self.session.pk, 3, now=EARLY)

        self.assertTrue(result.ok)
        self.assertEqual([r.pk for r in result.promoted], [self.a.pk, self.b.pk])
        for r in (self.a, self.b):
            r.refresh_from_db()
            self.assertEqual(r.status, Reservation.Status.CONFIRMED)
            self.assertIsNotNone(r.promoted_at)
        self.assertEqual(waitlist.positions(self.session), [(self.c.pk, 1)])
        self.assertCounters(confirmed_count=3, waitlisted_count=1)

    def test_renumber_repairs_gaps(self):
        Reservation.objects.filter(pk=self.c.pk).update(waitlist_position=7)
        self.assertEqual(waitlist.renumber(self.session), 3)
        self.assertEqual(self.positions(), [1, 2, 3])

    def test_promote_next_on_empty_line(self):
        session = make_session(make_class(name="Empty"), start=START + timedelta(days=1))
        self.assertIsNone(waitlist.promote_next(session))


class CancelReservationTests(BookingTestCase):
    def setUp(self):
        super().setUp()
        self.dojo_class.capacity = 1
        self.dojo_class.save()
        self.x = self.book(make_member("X")).reservation
        self.y = self.book(make_member("Y"), when=EARLY + timedelta(minutes=1)).reservation

    def test_cancel_promotes_waiting_member(self):
        result = services.cancel_reservation(self.x.pk, services.ROLE_MEMBER, "sick", now=EARLY)

        self.assertTrue(result.ok)
        self.assertEqual(result.status, Reservation.Status.CANCELLED)
        self.assertEqual(result.reservation.cancel_reason, "sick")
        self.assertEqual(result.reservation.cancelled_by_role, services.ROLE_MEMBER)
        self.assertEqual([r.pk for r in result.promoted], [self.y.pk])

        self.y.refresh_from_db()
        self.assertEqual(self.y.status, Reservation.Status.CONFIRMED)
        self.assertIsNone(self.y.waitlist_position)
        self.assertEqual(waitlist.positions(self.session), [])
        self.assertCounters(confirmed_count=1, waitlisted_count=0)

    def test_member_cannot_cancel_after_cutoff(self):
        late = START - timedelta(minutes=self.dojo_class.cancellation_cutoff)

        result = services.cancel_reservation(self.x.pk, services.ROLE_MEMBER, now=late)

        self.assertEqual(result.error_code, "cancellation_cutoff_passed")
        self.x.refresh_from_db()
        self.assertEqual(self.x.status, Reservation.Status.CONFIRMED)

    def test_class_cutoff_override(self):
        self.dojo_class.cancellation_cutoff_min = 30
        self.dojo_class.save()

        result = services.cancel_reservation(self.x.pk, services.ROLE_MEMBER, now=START - timedelta(minutes=31))

        self.assertTrue(result.ok)

    def test_admin_ignores_cutoff(self):
        result = services.cancel_reservation(self.x.pk, services.ROLE_ADMIN, now=START - timedelta(minutes=5))

        self.assertTrue(result.ok)
        self.assertEqual(len(result.promoted), 1)

    def test_waitlisted_cancel_ignores_cutoff(self):
        result = services.cancel_reservation(self.y.pk, services.ROLE_MEMBER, now=START - timedelta(minutes=5))

        self.assertTrue(result.ok)
        self.assertCounters(confirmed_count=1, waitlisted_count=0)

    def test_cancel_twice(self):
        services.cancel_reservation(self.y.pk, services.ROLE_MEMBER, now=EARLY)
        result = services.cancel_reservation(self.y.pk, services.ROLE_MEMBER, now=EARLY)
        self.assertEqual(result.error_code, "invalid_transition")

    def test_checked_in_cannot_be_cancelled(self):
        services.check_in(self.x.pk, now=START)

        result = services.cancel_reservation(self.x.pk, services.ROLE_ADMIN, now=START)

        self.assertEqual(result.error_code, "invalid_transition")
        self.assertCounters(confirmed_count=1, checked_in_count=1)

    def test_unknown_reservation(self):
        result = services.cancel_reservation(999999, services.ROLE_ADMIN, now=EARLY)
        self.assertEqual(result.error_code, "not_found")


@override_settings(ACADEMY_CHECKIN_OPENS_BEFORE_MIN=15, ACADEMY_CHECKIN_CLOSES_AFTER_MIN=30)
class CheckInTests(BookingTestCase):
    def setUp(self):
        super().setUp()
        self.r = self.book(make_member("Ana")).reservation

    def test_check_in_on_time(self):
        result = services.check_in(self.r.pk, now=START - timedelta(minutes=10))

        self.assertTrue(result.ok)
        self.assertEqual(result.status, Reservation.Status.CHECKED_IN)
        self.assertEqual(result.attendance.status, AttendanceRecord.Status.PRESENT)
        self.assertEqual(result.attendance.mode, AttendanceRecord.Mode.SCHEDULED)
        self.assertCounters(checked_in_count=1, confirmed_count=1)

    def test_late_check_in(self):
        result = services.check_in(self.r.pk, now=START + timedelta(minutes=12))

        self.assertEqual(result.attendance.status, AttendanceRecord.Status.LATE)
        self.assertEqual(result.attendance.minutes_late, 12)

    def test_too_early(self):
        result = services.check_in(self.r.pk, now=START - timedelta(minutes=20))

        self.assertFalse(result.ok)
        self.assertEqual(result.error_code, "outside_checkin_window")
        self.r.refresh_from_db()
        self.assertEqual(self.r.status, Reservation.Status.CONFIRMED)
        self.assertFalse(AttendanceRecord.objects.exists())

    def test_too_late(self):
        result = services.check_in(self.r.pk, now=START + timedelta(minutes=31))
        self.assertEqual(result.error_code, "outside_checkin_window")

    def test_window_checked_before_status(self):
        services.check_in(self.r.pk, now=START)
        result = services.check_in(self.r.pk, now=START + timedelta(hours=2))
        self.assertEqual(result.error_code, "outside_checkin_window")

    def test_second_check_in_is_refused(self):
        services.check_in(self.r.pk, now=START)

        result = services.check_in(self.r.pk, now=START + timedelta(minutes=1))

        self.assertEqual(result.error_code, "invalid_transition")
        self.assertEqual(AttendanceRecord.objects.count(), 1)
        self.assertCounters(checked_in_count=1)

    def test_waitlisted_cannot_check_in(self):
        self.dojo_class.capacity = 1
        self.dojo_class.save()
        waiting = self.book(make_member("Bia")).reservation

        result = services.check_in(waiting.pk, now=START)

        self.assertEqual(result.error_code, "invalid_transition")

    def test_cancelled_session(self):
        services.cancel_session(self.session.pk, "flooded", now=EARLY)
        result = services.check_in(self.r.pk, now=START)
        self.assertEqual(result.error_code, "invalid_transition")

    def test_record_present_is_idempotent(self):
        services.check_in(self.r.pk, now=START)
        self.r.refresh_from_db()

        record, created = attendance.record_present(self.r, START + timedelta(minutes=3))

        self.assertFalse(created)
        self.assertEqual(record.check_in_at, START)
        self.assertEqual(AttendanceRecord.objects.filter(reservation=self.r).count(), 1)
        self.assertCounters(checked_in_count=1)

    def test_check_out(self):
        services.check_in(self.r.pk, now=START)

        result = services.check_out(self.r.pk, now=START + timedelta(minutes=40))

        self.assertTrue(result.ok)
        self.assertEqual(result.attendance.duration_min, 40)
        self.assertEqual(result.attendance.status, AttendanceRecord.Status.EARLY_LEAVE)

        again = services.check_out(self.r.pk, now=START + timedelta(minutes=70))
        self.assertEqual(again.error_code, "invalid_transition")

    def test_full_stay_keeps_present(self):
        services.check_in(self.r.pk, now=START)
        result = services.check_out(self.r.pk, now=START + timedelta(minutes=60))
        self.assertEqual(result.attendance.status, AttendanceRecord.Status.PRESENT)

    def test_check_out_requires_check_in(self):
        result = services.check_out(self.r.pk, now=START)
        self.assertEqual(result.error_code, "invalid_transition")


class FinalizeSessionTests(BookingTestCase):
    def setUp(self):
        super().setUp()
        self.present = self.book(make_member("Present")).reservation
        self.absent = self.book(make_member("Absent")).reservation
        self.waiting = self.book(make_member("Waiting")).reservation
        services.check_in(self.present.pk, now=START)

    def test_requires_finished_session(self):
        result = services.finalize_session(self.session.pk, now=START)
        self.assertEqual(result.error_code, "invalid_transition")

    def test_marks_no_show_and_closes_waitlist(self):
        self.session.finish()

        result = services.finalize_session(self.session.pk, now=START + timedelta(hours=2))

        self.assertTrue(result.ok)
        self.assertEqual([r.pk for r in result.absent_marked], [self.absent.pk])
        self.assertEqual([r.pk for r in result.waitlist_closed], [self.waiting.pk])
        self.assertEqual(result.promoted, [])

        self.absent.refresh_from_db()
        self.assertEqual(self.absent.status, Reservation.Status.NO_SHOW)
        record = self.absent.attendance
        self.assertEqual(record.status, AttendanceRecord.Status.ABSENT)

        self.waiting.refresh_from_db()
        self.assertEqual(self.waiting.status, Reservation.Status.CANCELLED)
        self.assertEqual(self.waiting.cancel_reason, services.REASON_SESSION_FINISHED)
        self.assertCounters(no_show_count=1, checked_in_count=1, waitlisted_count=0)

    def test_second_run_changes_nothing(self):
        self.session.finish()
        services.finalize_session(self.session.pk)

        result = services.finalize_session(self.session.pk)

        self.assertTrue(result.ok)
        self.assertEqual(result.absent_marked, [])
        self.assertEqual(result.waitlist_closed, [])
        self.assertEqual(AttendanceRecord.objects.filter(status=AttendanceRecord.Status.ABSENT).count(), 1)
        self.assertCounters(no_show_count=1)

    def test_every_outcome_has_one_record(self):
        self.session.finish()
        services.finalize_session(self.session.pk)

        for r in Reservation.objects.all():
            count = AttendanceRecord.objects.filter(reservation=r).count()
            if r.status in (Reservation.Status.CHECKED_IN, Reservation.Status.NO_SHOW):
                self.assertEqual(count, 1)
            else:
                self.assertEqual(count, 0)

    def test_record_absent_is_idempotent(self):
        self.session.finish()
        services.finalize_session(self.session.pk)
        self.absent.refresh_from_db()

        _, created = attendance.record_absent(self.absent)

        self.assertFalse(created)
        self.assertCounters(no_show_count=1)


class SessionOperationTests(BookingTestCase):
    def test_cancel_session_closes_everything(self):
        confirmed = self.book(make_member("Ana")).reservation
        self.book(make_member("Bia"))
        waiting = self.book(make_member("Caio")).reservation

        result = services.cancel_session(self.session.pk, "Instructor ill", now=EARLY)

        self.assertTrue(result.ok)
        self.assertEqual(len(result.cancelled), 3)
        for r in (confirmed, waiting):
            r.refresh_from_db()
            self.assertEqual(r.status, Reservation.Status.CANCELLED)
            self.assertEqual(r.cancelled_by_role, services.ROLE_SYSTEM)
        self.assertCounters(confirmed_count=0, waitlisted_count=0, status=Session.Status.CANCELLED)
        self.assertFalse(AttendanceRecord.objects.exists())

        again = services.cancel_session(self.session.pk, "again", now=EARLY)
        self.assertEqual(again.error_code, "invalid_transition")

    def test_resize_below_taken_seats(self):
        self.book(make_member("Ana"))
        self.book(make_member("Bia"))

        result = services.resize_session(self.session.pk, 1, now=EARLY)

        self.assertEqual(result.error_code, "invalid_transition")
        self.assertCounters(capacity_override=None)

    def test_resize_to_zero_is_refused(self):
        result = services.resize_session(self.session.pk, 0, now=EARLY)

        self.assertFalse(result.ok)
        self.assertEqual(result.error_code, "invalid_transition")
        self.assertEqual(result.error.context["capacity"], 0)
        self.assertCounters(capacity_override=None)

    def test_resize_back_to_class_capacity(self):
        self.session.capacity_override = 5
        self.session.save()

        result = services.resize_session(self.session.pk, None, now=EARLY)

        self.assertTrue(result.ok)
        self.session.refresh_from_db()
        self.assertEqual(self.session.effective_capacity, 2)

    def test_list_orders_seats_then_waitlist(self):
        a = self.book(make_member("A"), when=EARLY).reservation
        b = self.book(make_member("B"), when=EARLY + timedelta(minutes=1)).reservation
        c = self.book(make_member("C"), when=EARLY + timedelta(minutes=2)).reservation
        d = self.book(make_member("D"), when=EARLY + timedelta(minutes=3)).reservation
        services.cancel_reservation(a.pk, services.ROLE_MEMBER, now=EARLY + timedelta(minutes=4))

        rows = services.list_reservations(self.session.pk)

        self.assertEqual([r.pk for r in rows], [b.pk, c.pk, d.pk, a.pk])
        self.assertEqual(rows[2].waitlist_position, 1)

    def test_normal_seats_never_exceed_capacity(self):
        for i in range(5):
            self.book(make_member(f"M{i}"), when=EARLY + timedelta(minutes=i))
        first = Reservation.objects.order_by("created_at").first()
        services.cancel_reservation(first.pk, services.ROLE_MEMBER, now=EARLY + timedelta(hours=1))

        held = Reservation.objects.filter(
            session=self.session,
            kind=Reservation.Kind.NORMAL,
            status__in=Reservation.SEAT_HOLDING,
        ).count()
        self.assertEqual(held, self.session.effective_capacity)
        self.assertEqual(self.session.reservations.filter(status=Reservation.Status.WAITLISTED).count(), 2)


@override_settings(ACADEMY_NOTIFY_ASYNC=False)
class NotificationTests(BookingTestCase):
    def test_cancel_notifies_after_commit(self):
        self.dojo_class.capacity = 1
        self.dojo_class.save()
        x = self.book(make_member("X")).reservation
        self.book(make_member("Y"))

        with mock.patch("core.telegram_notify.tg_send") as send:
            with self.captureOnCommitCallbacks(execute=True):
                services.cancel_reservation(x.pk, services.ROLE_MEMBER, now=EARLY)

        texts = [c.args[0] for c in send.call_args_list]
        self.assertEqual(len(texts), 2)
        self.assertTrue(any("Promoted from the waitlist" in t for t in texts))
        self.assertTrue(any("Reservation cancelled" in t for t in texts))

    def test_refused_operation_sends_nothing(self):
        x = self.book(make_member("X")).reservation

        with mock.patch("core.telegram_notify.tg_send") as send:
            with self.captureOnCommitCallbacks(execute=True):
                services.cancel_reservation(x.pk, services.ROLE_MEMBER, now=START)

        send.assert_not_called()


class BookingViewTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.user = user_model.objects.create_user(username="ana", password="pass12345")
        self.other = user_model.objects.create_user(username="bia", password="pass12345")
        self.staff = user_model.objects.create_user(username="sensei", password="pass12345", is_staff=True)
        self.member = make_member("Ana", user=self.user)
        self.other_member = make_member("Bia", user=self.other)

        self.dojo_class = make_class(capacity=1, allow_waitlist=False)
        start = timezone.now().replace(microsecond=0) + timedelta(days=1)
        self.session = make_session(self.dojo_class, start=start)

    def reserve(self, **data):
        return self.client.post(
            reverse("booking:session_reservations", args=[self.session.pk]),
            data=data,
            content_type="application/json",
        )

    def test_login_required(self):
        response = self.reserve()
        self.assertEqual(response.status_code, 302)

    def test_member_books_own_seat(self):
        self.client.force_login(self.user)

        response = self.reserve()

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["reservation"]["status"], "confirmed")
        self.assertEqual(body["reservation"]["member"], self.member.pk)
        self.assertEqual(Reservation.objects.get().source, Reservation.Source.WEB)

    def test_domain_error_mapping(self):
        services.create_reservation(self.session.pk, self.other_member.pk)
        self.client.force_login(self.user)

        response = self.reserve()

        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body["error"], "session_full")
        self.assertEqual(body["context"]["session_id"], self.session.pk)

    def test_not_eligible_is_forbidden(self):
        self.member.status = Member.Status.SUSPENDED
        self.member.save()
        self.client.force_login(self.user)

        response = self.reserve()

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"], "not_eligible")

    def test_bad_kind(self):
        self.client.force_login(self.user)
        response = self.reserve(kind="vip")
        self.assertEqual(response.status_code, 400)

    def test_non_string_kind(self):
        self.client.force_login(self.user)

        response = self.reserve(kind=5)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "bad_request")
        self.assertFalse(Reservation.objects.exists())

    def test_non_string_reason(self):
        r = services.create_reservation(self.session.pk, self.member.pk).reservation
        self.client.force_login(self.user)

        response = self.client.post(
            reverse("booking:cancel", args=[r.pk]),
            data={"reason": 1},
            content_type="application/json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "bad_request")
        r.refresh_from_db()
        self.assertEqual(r.status, Reservation.Status.CONFIRMED)

    def test_staff_books_for_member_and_lists(self):
        self.client.force_login(self.staff)

        response = self.reserve(member_id=self.other_member.pk)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(Reservation.objects.get().source, Reservation.Source.ADMIN)

        listing = self.client.get(reverse("booking:session_reservations", args=[self.session.pk]))
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(len(listing.json()["reservations"]), 1)

    def test_list_is_staff_only(self):
        self.client.force_login(self.user)
        response = self.client.get(reverse("booking:session_reservations", args=[self.session.pk]))
        self.assertEqual(response.status_code, 403)

    def test_cannot_touch_other_members_reservation(self):
        r = services.create_reservation(self.session.pk, self.other_member.pk).reservation
        self.client.force_login(self.user)

        response = self.client.post(reverse("booking:cancel", args=[r.pk]))

        self.assertEqual(response.status_code, 403)
        r.refresh_from_db()
        self.assertEqual(r.status, Reservation.Status.CONFIRMED)

    def test_member_cancels(self):
        r = services.create_reservation(self.session.pk, self.member.pk).reservation
        self.client.force_login(self.user)

        response = self.client.post(
            reverse("booking:cancel", args=[r.pk]),
            data={"reason": "travel"},
            content_type="application/json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["reservation"]["status"], "cancelled")
        self.assertEqual(response.json()["reservation"]["cancel_reason"], "travel")

    def test_check_in_and_out(self):
        soon = timezone.now().replace(microsecond=0) + timedelta(minutes=5)
        session = make_session(make_class(name="Noon"), start=soon)
        r = services.create_reservation(session.pk, self.member.pk, now=soon - timedelta(hours=3)).reservation
        self.client.force_login(self.user)

        response = self.client.post(reverse("booking:checkin", args=[r.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["attendance"]["status"], "present")

        response = self.client.post(reverse("booking:checkout", args=[r.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["attendance"]["status"], "early_leave")

    def test_check_in_outside_window(self):
        r = services.create_reservation(self.session.pk, self.member.pk).reservation
        self.client.force_login(self.user)

        response = self.client.post(reverse("booking:checkin", args=[r.pk]))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "outside_checkin_window")

    def test_get_not_allowed_on_actions(self):
        r = services.create_reservation(self.session.pk, self.member.pk).reservation
        self.client.force_login(self.user)
        response = self.client.get(reverse("booking:cancel", args=[r.pk]))
        self.assertEqual(response.status_code, 405)

    def test_finalize_is_staff_only(self):
        self.client.force_login(self.user)
        response = self.client.post(reverse("booking:finalize", args=[self.session.pk]))
        self.assertEqual(response.status_code, 403)

        self.client.force_login(self.staff)
        response = self.client.post(reverse("booking:finalize", args=[self.session.pk]))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "invalid_transition")

        self.session.finish()
        response = self.client.post(reverse("booking:finalize", args=[self.session.pk]))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["absent_marked"], [])

    def test_unknown_session(self):
        self.client.force_login(self.user)
        response = self.client.post(
            reverse("booking:session_reservations", args=[999999]),
            data={},
            content_type="application/json",
        )
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "not_found")


class FinalizeCommandTests(TestCase):
    def setUp(self):
        self.dojo_class = make_class()
        yesterday = timezone.now().replace(microsecond=0) - timedelta(days=1)
        self.session = make_session(self.dojo_class, start=yesterday)
        member = make_member("Ana")
        self.r = services.create_reservation(
            self.session.pk, member.pk, now=yesterday - timedelta(hours=5)
        ).reservation

    def test_close_ended_and_finalize(self):
        out = StringIO()

        call_command("finalize_sessions", "--close-ended", stdout=out)

        self.session.refresh_from_db()
        self.assertEqual(self.session.status, Session.Status.FINISHED)
        self.r.refresh_from_db()
        self.assertEqual(self.r.status, Reservation.Status.NO_SHOW)
        self.assertIn("No-shows marked: 1", out.getvalue())

    def test_without_close_ended_leaves_open_sessions(self):
        call_command("finalize_sessions", stdout=StringIO())

        self.r.refresh_from_db()
        self.assertEqual(self.r.status, Reservation.Status.CONFIRMED)

    def test_single_session(self):
        self.session.finish()
        call_command("finalize_sessions", "--session", str(self.session.pk), stdout=StringIO())

        self.r.refresh_from_db()
        self.assertEqual(self.r.status, Reservation.Status.NO_SHOW)


@skipIf(connection.vendor == "sqlite", "SQLite has no row locks; run against MySQL")
class ConcurrentReservationTests(TransactionTestCase):
    def setUp(self):
        self.session = make_session(make_class(capacity=1))
        self.members = [make_member(f"Racer {i}") for i in range(2)]

    def race(self, members):
        barrier = threading.Barrier(len(members))
        results = []
        errors = []

        def book(member):
            try:
                barrier.wait(timeout=10)
                results.append(services.create_reservation(self.session.pk, member.pk, now=EARLY))
            except Exception as e:
                errors.append(e)
            finally:
                connection.close()

        threads = [threading.Thread(target=book, args=(m,)) for m in members]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        self.assertEqual(errors, [])
        return results

    def test_last_seat_goes_to_exactly_one_request(self):
        results = self.race(self.members)

        self.assertEqual(len(results), 2)
        self.assertTrue(all(r.ok for r in results))
        self.assertEqual(sorted(r.status for r in results), ["confirmed", "waitlisted"])

        self.session.refresh_from_db()
        self.assertEqual(self.session.confirmed_count, 1)
        self.assertEqual(self.session.waitlisted_count, 1)
        self.assertEqual(
            Reservation.objects.filter(session=self.session, status=Reservation.Status.CONFIRMED).count(),
            1,
        )
        self.assertEqual(waitlist.positions(self.session)[0][1], 1)

    def test_same_member_twice_creates_one_reservation(self):
        member = self.members[0]

        results = self.race([member, member])

        self.assertEqual(sorted(r.ok for r in results), [False, True])
        failed = next(r for r in results if not r.ok)
        self.assertEqual(failed.error_code, "duplicate_reservation")
        self.assertEqual(Reservation.objects.filter(session=self.session, member=member).count(), 1)
