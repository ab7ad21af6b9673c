from django.urls import include, path

urlpatterns = [
    path("api/checkouts/", include("apps.checkouts.urls")),
    path("api/", include("apps.monitoring.urls")),
]
