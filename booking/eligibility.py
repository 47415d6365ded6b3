from dataclasses import dataclass


CLASS_INACTIVE = "class_inactive"
GROUP_MISMATCH = "group_mismatch"
BELT_NOT_ALLOWED = "belt_not_allowed"
MEMBER_INACTIVE = "member_inactive"
CHECKIN_BLOCKED = "checkin_blocked"
NOT_EXEMPT_RANK = "not_exempt_rank"


@dataclass(frozen=True)
class Eligibility:
    ok: bool
    reason: str | None = None
    detail: str = ""

    def __bool__(self) -> bool:
        return self.ok


ELIGIBLE = Eligibility(ok=True)


def check_eligibility(member, dojo_class) -> Eligibility:
    """May ``member`` take part in sessions of ``dojo_class``?

    Rules are applied in a fixed order and the first failing one is
    reported. Pure: reads attributes, never touches the database.
    """
    if member is None or dojo_class is None:
        raise ValueError("member and dojo_class are required")

    if not dojo_class.is_active:
        return Eligibility(False, CLASS_INACTIVE, "Class is not active")

    if dojo_class.group != "both" and dojo_class.group != member.group:
        return Eligibility(False, GROUP_MISMATCH, f"Class is for the {dojo_class.group} group")

    allowed = list(dojo_class.allowed_belts or [])
    if allowed and member.belt not in allowed:
        return Eligibility(False, BELT_NOT_ALLOWED, "Belt is not allowed in this class")

    if member.status != "active":
        return Eligibility(False, MEMBER_INACTIVE, f"Member status is {member.status}")

    if member.checkin_blocked:
        return Eligibility(False, CHECKIN_BLOCKED, member.block_reason or "Check-in blocked")

    return ELIGIBLE


def check_exempt(member) -> Eligibility:
    if member is None:
        raise ValueError("member is required")
    if not member.is_exempt_rank:
        return Eligibility(False, NOT_EXEMPT_RANK, "Only senior ranks may book as exempt walk-in")
    return ELIGIBLE
