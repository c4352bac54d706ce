from django.urls import path

from . import views

urlpatterns = [
    path("campaigns/<slug:slug>/", views.campaign_detail, name="campaign-detail"),
    path(
        "campaigns/<slug:slug>/participation/",
        views.participation,
        name="campaign-participation",
    ),
    path("campaigns/<slug:slug>/questions/", views.questions, name="campaign-questions"),
    path("campaigns/<slug:slug>/draft/", views.draft, name="campaign-draft"),
    path("campaigns/<slug:slug>/responses/", views.submit, name="campaign-responses"),
    path("campaigns/<slug:slug>/redemptions/", views.redeem, name="campaign-redemptions"),
]
