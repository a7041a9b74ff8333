from django.db import models
from django.utils import timezone


class CacheEntry(models.Model):
    """Cache clé/valeur générique: un blob JSON par clé, écrasé à chaque écriture."""
    cache_key = models.CharField(max_length=100, primary_key=True)
    data = models.JSONField(default=dict)
    cached_at = models.DateTimeField(default=timezone.now)

    class Meta:
        verbose_name = 'Entrée de cache'
        verbose_name_plural = 'Entrées de cache'

    def __str__(self):
        return self.cache_key

    @classmethod
    def read(cls, key):
        return cls.objects.filter(cache_key=key).first()

    @classmethod
    def write(cls, key, data):
        entry, _ = cls.objects.update_or_create(
            cache_key=key,
            defaults={'data': data, 'cached_at': timezone.now()},
        )
        return entry

    def age_hours(self, now=None):
        now = now or timezone.now()
        return (now - self.cached_at).total_seconds() / 3600
