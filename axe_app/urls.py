from django.urls import include, path

urlpatterns = [
    path("api/", include("axe_app.api.urls")),
]
