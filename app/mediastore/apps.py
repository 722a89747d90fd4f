"""Django app configuration for mediastore app."""

from django.apps import AppConfig


class MediaStoreConfig(AppConfig):
    """Configuration for the mediastore app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "mediastore"
    verbose_name = "Media Store"
