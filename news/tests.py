import json
from datetime import timedelta
from unittest import mock

import httpx
from django.test import Client, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from news.facebook import FacebookClient, FacebookError, build_title, normalize_post, pick_image
from news.fingerprint import content_hash, source_hash
from news.models import CacheEntry
from news.services import NewsCache, NewsConfig, NewsNotReady, NewsUnavailable, to_response
from news.translation import (
    DeepLTranslator,
    LibreTranslator,
    TranslationError,
    build_translator,
    first_successful,
)

CONFIG = NewsConfig(page_id='123', page_token='token', posts_limit=3, refresh_hours=0.25)


def post(body, title=None, date='2025-01-01T10:00:00+0000', link='https://facebook.com/p/1', image=''):
    item = {
        'title': title if title is not None else build_title(body),
        'body': body,
        'date': date,
        'link': link,
        'image': image,
    }
    item['content_hash'] = content_hash(item)
    return item


def collection(posts):
    return {'cached_at': 1700000000, 'source_hash': source_hash(posts), 'posts': posts}


class FakeFetcher:
    def __init__(self, posts=None, error=None):
        self.posts = posts or []
        self.error = error
        self.calls = 0

    def fetch_posts(self, limit):
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.posts)


class FakeTranslator:
    def __init__(self, fail=False, error=None):
        self.calls = []
        self.fail = fail
        self.error = error

    def translate(self, texts, source, target):
        self.calls.append(list(texts))
        if self.fail:
            raise TranslationError('provider down')
        if self.error:
            raise self.error
        return [f"EN:{t}" for t in texts]


class FingerprintTests(TestCase):
    def test_cosmetic_fields_do_not_change_hash(self):
        a = post('Koncert w bazylice. Zapraszamy!')
        b = post('Koncert w bazylice. Zapraszamy!', date='2030-01-01', link='https://x', image='https://img')
        self.assertEqual(a['content_hash'], b['content_hash'])

    def test_body_or_title_change_changes_hash(self):
        a = post('Koncert w bazylice.')
        self.assertNotEqual(a['content_hash'], post('Koncert w kościele.')['content_hash'])
        self.assertNotEqual(a['content_hash'], post('Koncert w bazylice.', title='Inny tytuł')['content_hash'])

    def test_whitespace_is_normalized(self):
        self.assertEqual(
            post('Koncert   w\nbazylice.', title='Koncert')['content_hash'],
            post(' Koncert w bazylice. ', title='Koncert ')['content_hash'],
        )

    def test_source_hash_depends_on_order(self):
        a, b = post('Pierwszy.'), post('Drugi.')
        self.assertEqual(source_hash([a, b]), source_hash([dict(a, image='x'), b]))
        self.assertNotEqual(source_hash([a, b]), source_hash([b, a]))
        self.assertNotEqual(source_hash([a, b]), source_hash([a]))


class NormalizeTests(TestCase):
    def test_title_stops_at_sentence_end(self):
        self.assertEqual(build_title('Zapraszamy na koncert! Start o 19.'), 'Zapraszamy na koncert!')

    def test_title_uses_first_line(self):
        self.assertEqual(build_title('Nowe nagranie\nPosłuchajcie'), 'Nowe nagranie')

    def test_long_title_truncated(self):
        title = build_title('a' * 80)
        self.assertEqual(len(title), 60)
        self.assertTrue(title.endswith('…'))

    def test_image_fallback_chain(self):
        self.assertEqual(pick_image({'full_picture': 'full'}), 'full')
        media = {'attachments': {'data': [{'media': {'image': {'src': 'att'}}}]}}
        self.assertEqual(pick_image(media), 'att')
        sub = {'attachments': {'data': [{'subattachments': {'data': [{'media': {'image': {'src': 'sub'}}}]}}]}}
        self.assertEqual(pick_image(sub), 'sub')
        shared = {'attachments': {'data': [{'target': {'id': '555'}}]}}
        self.assertEqual(pick_image(shared, lambda target_id: f'shared-{target_id}'), 'shared-555')
        self.assertEqual(pick_image({}), '')

    def test_post_without_text_dropped(self):
        self.assertIsNone(normalize_post({'full_picture': 'x'}))
        self.assertEqual(normalize_post({'story': 'Zmiana zdjęcia.'})['body'], 'Zmiana zdjęcia.')


class FacebookClientTests(TestCase):
    def test_fetch_posts_normalizes_and_resolves_shared_image(self):
        requests = []

        def handler(request):
            requests.append(request.url.path)
            if request.url.path.endswith('/123/posts'):
                return httpx.Response(200, json={'data': [
                    {'message': 'Koncert. Zapraszamy', 'created_time': 't1', 'permalink_url': 'l1',
                     'attachments': {'data': [{'target': {'id': '999'}}]}},
                    {'full_picture': 'only-image'},
                ]})
            return httpx.Response(200, json={'full_picture': 'shared-image'})

        client = FacebookClient('123', 'token', client=httpx.Client(transport=httpx.MockTransport(handler)))
        posts = client.fetch_posts(3)
        self.assertEqual(len(posts), 1)
        self.assertEqual(posts[0]['title'], 'Koncert.')
        self.assertEqual(posts[0]['image'], 'shared-image')
        self.assertEqual(posts[0]['content_hash'], content_hash(posts[0]))
        self.assertEqual(requests, ['/v18.0/123/posts', '/v18.0/999'])

    def test_http_error(self):
        client = FacebookClient('123', 'token', client=httpx.Client(
            transport=httpx.MockTransport(lambda request: httpx.Response(400, json={'error': {}}))))
        with self.assertRaises(FacebookError):
            client.fetch_posts(3)


class TranslationTests(TestCase):
    def test_first_successful_falls_back_in_order(self):
        tried = []

        def call(candidate, timeout):
            tried.append((candidate, timeout))
            if candidate != 'c':
                raise httpx.ConnectTimeout('timeout')
            return 'ok'

        self.assertEqual(first_successful(['a', 'b', 'c', 'd'], call, 8), 'ok')
        self.assertEqual(tried, [('a', 8), ('b', 8), ('c', 8)])

    def test_first_successful_raises_when_all_fail(self):
        def call(candidate, timeout):
            raise TranslationError(f'{candidate} failed')

        with self.assertRaises(TranslationError) as ctx:
            first_successful(['a', 'b'], call, 1)
        self.assertIn('b failed', str(ctx.exception))

    def test_libre_tries_next_mirror(self):
        seen = []

        def handler(request):
            seen.append(request.url.host)
            if request.url.host == 'one.example':
                return httpx.Response(503, text='busy')
            body = json.loads(request.content)
            return httpx.Response(200, json={'translatedText': [f'en {q}' for q in body['q']]})

        translator = LibreTranslator(
            endpoints=['https://one.example/translate', 'https://two.example/translate'],
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        self.assertEqual(translator.translate(['a', 'b'], 'pl', 'en'), ['en a', 'en b'])
        self.assertEqual(seen, ['one.example', 'two.example'])

    def test_malformed_mirror_body_falls_back(self):
        seen = []

        def handler(request):
            seen.append(request.url.host)
            if request.url.host == 'one.example':
                return httpx.Response(200, json=[{'translatedText': 'x'}])
            return httpx.Response(200, json={'translatedText': ['en a']})

        translator = LibreTranslator(
            endpoints=['https://one.example/translate', 'https://two.example/translate'],
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        self.assertEqual(translator.translate(['a'], 'pl', 'en'), ['en a'])
        self.assertEqual(seen, ['one.example', 'two.example'])

    def test_deepl_malformed_body_is_failure(self):
        for body in (['Hello'], 'Hello', {'translations': ['Hello']}):
            translator = DeepLTranslator('key', client=httpx.Client(
                transport=httpx.MockTransport(lambda request, body=body: httpx.Response(200, json=body))))
            with self.assertRaises(TranslationError):
                translator.translate(['Cześć'], 'pl', 'en')

    def test_empty_translation_is_failure(self):
        translator = LibreTranslator(
            endpoints=['https://one.example/translate'],
            client=httpx.Client(transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json={'translatedText': ['  ']}))),
        )
        with self.assertRaises(TranslationError):
            translator.translate(['a'], 'pl', 'en')

    def test_deepl_batches_texts_in_one_request(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={'translations': [{'text': 'Hello'}, {'text': 'World'}]})

        translator = DeepLTranslator('key', client=httpx.Client(transport=httpx.MockTransport(handler)))
        self.assertEqual(translator.translate(['Cześć', 'Świat'], 'pl', 'en'), ['Hello', 'World'])
        self.assertEqual(len(seen), 1)
        self.assertEqual(seen[0].headers['Authorization'], 'DeepL-Auth-Key key')
        self.assertIn(b'target_lang=EN', seen[0].content)

    def test_build_translator(self):
        self.assertIsInstance(build_translator({'PROVIDER': 'libre'}), LibreTranslator)
        self.assertIsInstance(build_translator({'PROVIDER': 'deepl', 'API_KEY': 'k'}), DeepLTranslator)
        with self.assertRaises(TranslationError):
            build_translator({'PROVIDER': 'deepl'})


class SourceCacheTests(TestCase):
    def test_fresh_cache_served_without_upstream(self):
        cached = collection([post('Stary post.')])
        CacheEntry.write('facebook_news', cached)
        fetcher = FakeFetcher([post('Nowy post.')])
        self.assertEqual(NewsCache(CONFIG, fetcher=fetcher).source_collection(), cached)
        self.assertEqual(fetcher.calls, 0)

    def test_expired_cache_refetched_and_stored(self):
        CacheEntry.write('facebook_news', collection([post('Stary post.')]))
        CacheEntry.objects.update(cached_at=timezone.now() - timedelta(hours=1))
        fresh = [post('Nowy post.')]
        result = NewsCache(CONFIG, fetcher=FakeFetcher(fresh)).source_collection()
        self.assertEqual(result['posts'], fresh)
        self.assertEqual(result['source_hash'], source_hash(fresh))
        self.assertEqual(CacheEntry.read('facebook_news').data['source_hash'], source_hash(fresh))

    def test_upstream_failure_falls_back_to_stale(self):
        stale = collection([post('Stary post.')])
        CacheEntry.write('facebook_news', stale)
        CacheEntry.objects.update(cached_at=timezone.now() - timedelta(hours=1))
        result = NewsCache(CONFIG, fetcher=FakeFetcher(error=FacebookError('down'))).source_collection()
        self.assertEqual(result, stale)

    def test_upstream_failure_without_cache(self):
        with self.assertRaises(NewsUnavailable):
            NewsCache(CONFIG, fetcher=FakeFetcher(error=FacebookError('down'))).source_collection()

    def test_empty_upstream_keeps_stale(self):
        stale = collection([post('Stary post.')])
        CacheEntry.write('facebook_news', stale)
        CacheEntry.objects.update(cached_at=timezone.now() - timedelta(hours=1))
        self.assertEqual(NewsCache(CONFIG, fetcher=FakeFetcher([])).source_collection(), stale)


class ReconcileTests(TestCase):
    def setUp(self):
        self.posts = [post('Pierwszy post.'), post('Drugi post.'), post('Trzeci post.')]
        self.translator = FakeTranslator()
        self.cache = NewsCache(CONFIG, translator=self.translator)

    def test_first_reconcile_batches_everything_in_one_call(self):
        derived = self.cache.reconcile(collection(self.posts), 'en')
        self.assertEqual(len(self.translator.calls), 1)
        self.assertEqual(len(self.translator.calls[0]), 6)
        self.assertEqual(derived['posts'][0]['body'], 'EN:Pierwszy post.')
        self.assertEqual(derived['source_hash'], source_hash(self.posts))
        self.assertEqual(CacheEntry.read('facebook_news_en').data, derived)

    def test_second_reconcile_without_change_makes_no_calls(self):
        self.cache.reconcile(collection(self.posts), 'en')
        before = CacheEntry.read('facebook_news_en').data
        again = self.cache.reconcile(collection(self.posts), 'en')
        self.assertEqual(len(self.translator.calls), 1)
        self.assertEqual(again, before)

    def test_one_changed_body_translates_only_that_item(self):
        self.cache.reconcile(collection(self.posts), 'en')
        first = CacheEntry.read('facebook_news_en').data['posts']

        changed = list(self.posts)
        changed[1] = post('Drugi post, poprawiony.', title='Drugi post.')
        derived = self.cache.reconcile(collection(changed), 'en')

        self.assertEqual(len(self.translator.calls), 2)
        self.assertEqual(self.translator.calls[1], ['Drugi post.', 'Drugi post, poprawiony.'])
        self.assertEqual(derived['posts'][0], first[0])
        self.assertEqual(derived['posts'][2], first[2])
        self.assertEqual(derived['posts'][1]['body'], 'EN:Drugi post, poprawiony.')

    def test_cosmetic_change_reuses_translation_and_refreshes_fields(self):
        self.cache.reconcile(collection(self.posts), 'en')
        moved = [dict(p) for p in self.posts]
        moved[0]['image'] = 'https://img/new.jpg'
        derived = self.cache.reconcile(dict(collection(moved), source_hash='forced-new-hash'), 'en')
        self.assertEqual(len(self.translator.calls), 1)
        self.assertEqual(derived['posts'][0]['image'], 'https://img/new.jpg')
        self.assertEqual(derived['posts'][0]['body'], 'EN:Pierwszy post.')

    def test_empty_fields_skipped(self):
        posts = [post('Treść bez tytułu.', title='')]
        self.cache.reconcile(collection(posts), 'en')
        self.assertEqual(self.translator.calls, [['Treść bez tytułu.']])

    def test_unexpected_provider_error_reported_per_language(self):
        self.translator.error = AttributeError("'list' object has no attribute 'get'")
        self.assertEqual(self.cache.refresh_derived(collection(self.posts)), {'en': False})
        self.assertIsNone(CacheEntry.read('facebook_news_en'))

    @override_settings(NEWS={'FACEBOOK_PAGE_ID': '123', 'TRANSLATION': {'PROVIDER': 'libre'}})
    def test_from_settings_shares_and_closes_one_client(self):
        cache = NewsCache.from_settings()
        with cache:
            self.assertIs(cache.fetcher._client, cache.translator._client)
            http = cache.fetcher._client
        self.assertTrue(http.is_closed)

    def test_translation_failure_leaves_derived_stale(self):
        self.cache.reconcile(collection(self.posts), 'en')
        before = CacheEntry.read('facebook_news_en').data
        self.translator.fail = True
        changed = self.posts + [post('Czwarty post.')]
        with self.assertRaises(TranslationError):
            self.cache.reconcile(collection(changed), 'en')
        self.assertEqual(CacheEntry.read('facebook_news_en').data, before)
        self.assertEqual(self.cache.refresh_derived(collection(changed)), {'en': False})

    def test_derived_read_never_translates(self):
        with self.assertRaises(NewsNotReady):
            self.cache.derived_collection('en')
        self.assertEqual(self.translator.calls, [])

    def test_response_hides_fingerprints(self):
        data = to_response(collection(self.posts))
        self.assertEqual(set(data), {'cachedAt', 'sourceHash', 'posts'})
        self.assertEqual(set(data['posts'][0]), {'title', 'body', 'date', 'image', 'link'})


class NewsViewTests(TestCase):
    def setUp(self):
        self.client = Client()
        self.posts = [post('Koncert w bazylice. Zapraszamy!')]
        self.fetcher = FakeFetcher(self.posts)
        self.translator = FakeTranslator()
        cache = NewsCache(CONFIG, fetcher=self.fetcher, translator=self.translator)
        patcher = mock.patch('news.views.get_news_cache', return_value=cache)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_source_language(self):
        resp = self.client.get(reverse('news:facebook_news'))
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(data['posts'][0]['title'], 'Koncert w bazylice.')
        self.assertEqual(data['sourceHash'], source_hash(self.posts))
        self.assertEqual(self.translator.calls, [])

    def test_derived_language_not_ready(self):
        resp = self.client.get(reverse('news:facebook_news'), {'lang': 'en'})
        self.assertEqual(resp.status_code, 503)
        self.assertIn('error', resp.json())
        self.assertEqual(self.translator.calls, [])

    def test_prefetch_then_derived_language(self):
        self.client.get(reverse('news:facebook_news'), {'prefetch_en': '1'})
        self.assertEqual(len(self.translator.calls), 1)
        resp = self.client.get(reverse('news:facebook_news'), {'lang': 'en'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()['posts'][0]['body'], 'EN:Koncert w bazylice. Zapraszamy!')

    def test_translation_failure_does_not_fail_source(self):
        self.translator.fail = True
        resp = self.client.get(reverse('news:facebook_news'), {'prefetch_en': '1'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()['posts']), 1)

    def test_unexpected_provider_error_does_not_fail_source(self):
        self.translator.error = AttributeError("'list' object has no attribute 'get'")
        resp = self.client.get(reverse('news:facebook_news'), {'prefetch_en': '1'})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()['posts']), 1)
        self.assertFalse(CacheEntry.objects.filter(cache_key='facebook_news_en').exists())

    def test_http_client_closed_after_response(self):
        http = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        cache = NewsCache(CONFIG, fetcher=self.fetcher, translator=self.translator, client=http)
        with mock.patch('news.views.get_news_cache', return_value=cache):
            resp = self.client.get(reverse('news:facebook_news'))
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(http.is_closed)

    def test_upstream_failure_without_cache(self):
        self.fetcher.error = FacebookError('down')
        resp = self.client.get(reverse('news:facebook_news'))
        self.assertEqual(resp.status_code, 502)

    def test_unknown_language(self):
        self.assertEqual(self.client.get(reverse('news:facebook_news'), {'lang': 'de'}).status_code, 400)

    def test_wrong_method(self):
        self.assertEqual(self.client.post(reverse('news:facebook_news')).status_code, 405)


__all__ = [
    'FingerprintTests',
    'NormalizeTests',
    'FacebookClientTests',
    'TranslationTests',
    'SourceCacheTests',
    'ReconcileTests',
    'NewsViewTests',
]
