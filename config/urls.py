from django.contrib import admin
from django.urls import path, include

admin.site.site_header = "Academy admin"
admin.site.site_title = "Academy"
admin.site.index_title = "Management"

urlpatterns = [
    path("admin/", admin.site.urls),
    path("booking/", include("booking.urls")),
]
