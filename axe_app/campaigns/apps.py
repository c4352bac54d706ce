from django.apps import AppConfig


class CampaignsConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "axe_app.campaigns"
    label = "campaigns"
    verbose_name = "Campaigns"
