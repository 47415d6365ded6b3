"""Turns reservation outcomes into attendance records.

One record per reservation (enforced by the one-to-one key); repeated calls
return the existing record instead of failing.
"""
import logging

from django.db import IntegrityError, transaction
from django.db.models import F

from schedule.models import Session

from .errors import InvalidTransition
from .models import AttendanceRecord, Reservation


logger = logging.getLogger(__name__)


def _existing(reservation):
    return AttendanceRecord.objects.filter(reservation_id=reservation.pk).first()


def _create_once(reservation, **fields):
    try:
        with transaction.atomic():
            record = AttendanceRecord.objects.create(
                reservation=reservation,
                session_id=reservation.session_id,
                member_id=reservation.member_id,
                **fields,
            )
    except IntegrityError:
        # another request got there first
        return AttendanceRecord.objects.get(reservation_id=reservation.pk), False
    return record, True


def record_present(reservation: Reservation, timestamp):
    if reservation.status not in (Reservation.Status.CONFIRMED, Reservation.Status.CHECKED_IN):
        raise InvalidTransition(
            "Only confirmed reservations can be marked present",
            reservation_id=reservation.pk,
            status=reservation.status,
        )

    record = _existing(reservation)
    if record:
        return record, False

    session = reservation.session
    status = AttendanceRecord.Status.PRESENT
    if timestamp > session.start_at:
        status = AttendanceRecord.Status.LATE
    mode = AttendanceRecord.Mode.WALK_IN if reservation.is_exempt else AttendanceRecord.Mode.SCHEDULED

    record, created = _create_once(reservation, mode=mode, status=status, check_in_at=timestamp)
    if created:
        Session.objects.filter(pk=session.pk).update(checked_in_count=F("checked_in_count") + 1)
        logger.info("Attendance %s (%s) recorded for reservation %s", record.pk, status, reservation.pk)
    return record, created


def record_absent(reservation: Reservation):
    if reservation.status not in (Reservation.Status.CONFIRMED, Reservation.Status.NO_SHOW):
        raise InvalidTransition(
            "Only confirmed reservations can be marked absent",
            reservation_id=reservation.pk,
            status=reservation.status,
        )

    record = _existing(reservation)
    if record:
        return record, False

    mode = AttendanceRecord.Mode.WALK_IN if reservation.is_exempt else AttendanceRecord.Mode.SCHEDULED
    record, created = _create_once(
        reservation,
        mode=mode,
        status=AttendanceRecord.Status.ABSENT,
        note="No-show: never checked in",
    )
    if created:
        Session.objects.filter(pk=reservation.session_id).update(no_show_count=F("no_show_count") + 1)
        logger.info("Absence %s recorded for reservation %s", record.pk, reservation.pk)
    return record, created


def record_checkout(record: AttendanceRecord, timestamp) -> AttendanceRecord:
    if not record.check_in_at:
        raise InvalidTransition("Check-in is required before check-out", reservation_id=record.reservation_id)
    if record.check_out_at:
        raise InvalidTransition("Check-out already recorded", reservation_id=record.reservation_id)
    if timestamp < record.check_in_at:
        raise InvalidTransition("Check-out cannot precede check-in", reservation_id=record.reservation_id)

    record.check_out_at = timestamp
    record.duration_min = int((timestamp - record.check_in_at).total_seconds() // 60)
    update_fields = ["check_out_at", "duration_min"]
    if timestamp < record.session.end_at:
        record.status = AttendanceRecord.Status.EARLY_LEAVE
        update_fields.append("status")
    record.save(update_fields=update_fields)
    return record
