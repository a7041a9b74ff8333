from django.http import JsonResponse
from django.views.decorators.http import require_GET

from .services import NewsCache, NewsNotReady, NewsUnavailable, to_response


def json_error(message, status):
    return JsonResponse({'error': message}, status=status, json_dumps_params={'ensure_ascii': False})


def get_news_cache():
    return NewsCache.from_settings()


@require_GET
def facebook_news(request):
    # ?lang=en -> cache traduit uniquement; ?prefetch_en=1 -> réconcilier après lecture PL
    with get_news_cache() as cache:
        return _facebook_news(request, cache)


def _facebook_news(request, cache):
    config = cache.config
    lang = (request.GET.get('lang') or config.source_language).lower()
    prefetch = request.GET.get('prefetch_en') == '1'

    if lang != config.source_language:
        if lang not in config.derived_languages:
            return json_error('Nieobsługiwany język.', 400)
        try:
            collection = cache.derived_collection(lang)
        except NewsNotReady:
            return json_error(
                f'Cache {lang.upper()} nie jest jeszcze przygotowane. '
                'Odśwież wersję PL z prefetch_en=1, aby wygenerować tłumaczenie.',
                503,
            )
        return JsonResponse(to_response(collection), json_dumps_params={'ensure_ascii': False})

    try:
        collection = cache.source_collection()
    except NewsUnavailable:
        return json_error('Błąd pobierania danych z Facebooka.', 502)

    if prefetch and collection.get('posts'):
        cache.refresh_derived(collection)

    return JsonResponse(to_response(collection), json_dumps_params={'ensure_ascii': False})
