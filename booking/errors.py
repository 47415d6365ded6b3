"""Domain errors of the booking engine.

They are raised inside the engine so the surrounding ``transaction.atomic``
block rolls back, and converted to a :class:`booking.services.BookingResult`
at the public boundary. None of them is worth retrying.
"""


class BookingError(Exception):
    code = "booking_error"
    http_status = 400
    default_message = "Booking operation refused"

    def __init__(self, message: str = "", **context):
        self.message = message or self.default_message
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(self.message)

    def as_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "context": self.context}


class NotFound(BookingError):
    code = "not_found"
    http_status = 404
    default_message = "Object not found"


class NotEligible(BookingError):
    code = "not_eligible"
    http_status = 403
    default_message = "Member is not eligible for this class"


class DuplicateReservation(BookingError):
    code = "duplicate_reservation"
    http_status = 409
    default_message = "Member already has an active reservation for this session"


class SessionFull(BookingError):
    code = "session_full"
    http_status = 409
    default_message = "Session is full and the waitlist is disabled"


class SessionNotBookable(BookingError):
    code = "session_not_bookable"
    default_message = "Session is not open for booking"


class InvalidTransition(BookingError):
    code = "invalid_transition"
    http_status = 409
    default_message = "Reservation cannot change to the requested state"


class OutsideCheckinWindow(BookingError):
    code = "outside_checkin_window"
    default_message = "Check-in is not open for this session right now"


class CancellationCutoffPassed(BookingError):
    code = "cancellation_cutoff_passed"
    default_message = "Cancellation deadline for this session has passed"
