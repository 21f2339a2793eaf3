from django.apps import AppConfig


class NebenkostenConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "nebenkosten"
    verbose_name = "Nebenkosten"

    def ready(self):
        from nebenkosten import signals  # noqa: F401
