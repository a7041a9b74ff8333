from django.contrib import admin

from .models import CacheEntry


@admin.register(CacheEntry)
class CacheEntryAdmin(admin.ModelAdmin):
    list_display = ('cache_key', 'cached_at', 'source_hash', 'posts_count')
    readonly_fields = ('cache_key', 'cached_at', 'data')
    actions = ['invalider']

    def source_hash(self, obj):
        return (obj.data or {}).get('source_hash', '')[:12]
    source_hash.short_description = "Empreinte"

    def posts_count(self, obj):
        return len((obj.data or {}).get('posts') or [])
    posts_count.short_description = "Posts"

    def has_add_permission(self, request):
        return False

    def invalider(self, request, queryset):
        count = queryset.count()
        queryset.delete()
        self.message_user(request, f"{count} entrées supprimées; elles seront reconstruites à la prochaine requête.")
    invalider.short_description = "Invalider les entrées sélectionnées"
