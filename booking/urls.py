from django.urls import path
from . import views

app_name = "booking"

urlpatterns = [
    path("sessions/<int:session_id>/reservations/", views.session_reservations, name="session_reservations"),
    path("sessions/<int:session_id>/finalize/", views.finalize_session, name="finalize"),

    path("reservations/<int:reservation_id>/cancel/", views.cancel_reservation, name="cancel"),
    path("reservations/<int:reservation_id>/checkin/", views.check_in, name="checkin"),
    path("reservations/<int:reservation_id>/checkout/", views.check_out, name="checkout"),
]
