from django.apps import AppConfig


class CommonConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'common'
    verbose_name = 'Common HMS Components'

    def ready(self):
        """Resolve feature capabilities once at startup."""
        from common.features import load_features
        load_features()
