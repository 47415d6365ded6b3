import json

from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.http import require_http_methods, require_POST

from members.models import Member
from schedule.models import Session

from . import services
from .models import AttendanceRecord, Reservation


def _json_error(code: str, message: str, status: int = 400, **context):
    return JsonResponse({"error": code, "message": message, "context": context}, status=status)


def _payload(request) -> dict:
    if request.content_type == "application/json":
        try:
            data = json.loads(request.body or b"{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
    return request.POST.dict()


def _own_member(user) -> Member | None:
    try:
        return user.member
    except Member.DoesNotExist:
        return None


def _reservation_dict(r: Reservation) -> dict:
    return {
        "id": r.pk,
        "session": r.session_id,
        "member": r.member_id,
        "member_name": str(r.member),
        "kind": r.kind,
        "status": r.status,
        "waitlist_position": r.waitlist_position,
        "created_at": r.created_at.isoformat(),
        "checked_in_at": r.checked_in_at.isoformat() if r.checked_in_at else None,
        "cancelled_at": r.cancelled_at.isoformat() if r.cancelled_at else None,
        "cancel_reason": r.cancel_reason,
    }


def _attendance_dict(a: AttendanceRecord | None) -> dict | None:
    if a is None:
        return None
    return {
        "id": a.pk,
        "mode": a.mode,
        "status": a.status,
        "check_in_at": a.check_in_at.isoformat() if a.check_in_at else None,
        "check_out_at": a.check_out_at.isoformat() if a.check_out_at else None,
        "duration_min": a.duration_min,
    }


def _respond(result, status: int = 200):
    if not result.ok:
        e = result.error
        return JsonResponse(e.as_dict(), status=e.http_status)

    data = {}
    if getattr(result, "reservation", None) is not None:
        data["reservation"] = _reservation_dict(result.reservation)
    if getattr(result, "attendance", None) is not None:
        data["attendance"] = _attendance_dict(result.attendance)
    data["promoted"] = [_reservation_dict(r) for r in result.promoted]
    return JsonResponse(data, status=status)


def _reservation_for(request, reservation_id: int):
    """The reservation, if the user is staff or owns it."""
    r = get_object_or_404(Reservation, pk=reservation_id)
    if request.user.is_staff:
        return r, None
    member = _own_member(request.user)
    if member is None or r.member_id != member.pk:
        return None, _json_error("forbidden", "Not your reservation", 403, reservation_id=reservation_id)
    return r, None


@login_required
@require_http_methods(["GET", "POST"])
def session_reservations(request, session_id: int):
    if request.method == "GET":
        return _list_reservations(request, session_id)

    data = _payload(request)

    if request.user.is_staff and data.get("member_id"):
        try:
            member_id = int(data["member_id"])
        except (TypeError, ValueError):
            return _json_error("bad_request", "member_id must be an integer")
        source = Reservation.Source.ADMIN
    else:
        member = _own_member(request.user)
        if member is None:
            return _json_error("not_found", "No member profile for this account", 404)
        member_id = member.pk
        source = Reservation.Source.WEB

    kind = data.get("kind") or Reservation.Kind.NORMAL
    if not isinstance(kind, str):
        return _json_error("bad_request", "kind must be a string")
    kind = kind.strip()
    if kind not in Reservation.Kind.values:
        return _json_error("bad_request", f"Unknown kind: {kind}", kind=kind)

    result = services.create_reservation(session_id, member_id, kind, source=source)
    return _respond(result, status=201)


def _list_reservations(request, session_id: int):
    if not request.user.is_staff:
        return _json_error("forbidden", "Staff only", 403)
    session = get_object_or_404(Session, pk=session_id)
    rows = services.list_reservations(session.pk)
    return JsonResponse({
        "session": session.pk,
        "capacity": session.effective_capacity,
        "seats_left": session.seats_left,
        "reservations": [_reservation_dict(r) for r in rows],
    })


@login_required
@require_POST
def cancel_reservation(request, reservation_id: int):
    r, denied = _reservation_for(request, reservation_id)
    if denied:
        return denied

    data = _payload(request)
    reason = data.get("reason") or ""
    if not isinstance(reason, str):
        return _json_error("bad_request", "reason must be a string")

    role = services.ROLE_ADMIN if request.user.is_staff else services.ROLE_MEMBER
    result = services.cancel_reservation(r.pk, role, reason.strip())
    return _respond(result)


@login_required
@require_POST
def check_in(request, reservation_id: int):
    r, denied = _reservation_for(request, reservation_id)
    if denied:
        return denied
    return _respond(services.check_in(r.pk))


@login_required
@require_POST
def check_out(request, reservation_id: int):
    r, denied = _reservation_for(request, reservation_id)
    if denied:
        return denied
    return _respond(services.check_out(r.pk))


@login_required
@require_POST
def finalize_session(request, session_id: int):
    if not request.user.is_staff:
        return _json_error("forbidden", "Staff only", 403)

    result = services.finalize_session(session_id)
    if not result.ok:
        e = result.error
        return JsonResponse(e.as_dict(), status=e.http_status)
    return JsonResponse({
        "session": session_id,
        "promoted": [r.pk for r in result.promoted],
        "absent_marked": [r.pk for r in result.absent_marked],
        "waitlist_closed": [r.pk for r in result.waitlist_closed],
    })
