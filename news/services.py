"""Cache des aktualności Facebook et des traductions dérivées.

Le cache de la langue source est rafraîchi à la lecture quand il a expiré.
Les langues dérivées ne sont jamais traduites sur une lecture: seule une
réconciliation explicite (``prefetch_en=1`` côté endpoint) les met à jour,
en réutilisant les traductions des posts dont l'empreinte n'a pas changé.
"""
import logging
from dataclasses import dataclass, field

import httpx
from django.conf import settings
from django.utils import timezone

from .facebook import FacebookClient, FacebookError
from .fingerprint import content_hash, source_hash
from .models import CacheEntry
from .translation import TranslationError, build_translator

logger = logging.getLogger(__name__)

SOURCE_CACHE_KEY = 'facebook_news'
COSMETIC_FIELDS = ('date', 'image', 'link')


class NewsUnavailable(Exception):
    pass


class NewsNotReady(Exception):
    pass


@dataclass(frozen=True)
class NewsConfig:
    page_id: str = ''
    page_token: str = ''
    api_version: str = 'v18.0'
    posts_limit: int = 3
    refresh_hours: float = 0.25
    source_language: str = 'pl'
    derived_languages: tuple = ('en',)
    translation: dict = field(default_factory=dict)

    @classmethod
    def from_settings(cls):
        conf = getattr(settings, 'NEWS', {})
        return cls(
            page_id=conf.get('FACEBOOK_PAGE_ID', ''),
            page_token=conf.get('FACEBOOK_PAGE_TOKEN', ''),
            api_version=conf.get('GRAPH_API_VERSION', 'v18.0'),
            posts_limit=int(conf.get('POSTS_LIMIT', 3)),
            refresh_hours=float(conf.get('CACHE_REFRESH_HOURS', 0.25)),
            source_language=conf.get('SOURCE_LANGUAGE', 'pl'),
            derived_languages=tuple(conf.get('DERIVED_LANGUAGES') or ('en',)),
            translation=dict(conf.get('TRANSLATION') or {}),
        )

    def cache_key(self, lang):
        if lang == self.source_language:
            return SOURCE_CACHE_KEY
        return f"{SOURCE_CACHE_KEY}_{lang}"


def to_response(collection):
    """Forme publique d'une collection (sans les empreintes par post)."""
    return {
        'cachedAt': collection.get('cached_at'),
        'sourceHash': collection.get('source_hash'),
        'posts': [
            {
                'title': p.get('title', ''),
                'body': p.get('body', ''),
                'date': p.get('date'),
                'image': p.get('image', ''),
                'link': p.get('link'),
            }
            for p in collection.get('posts') or []
        ],
    }


class NewsCache:
    def __init__(self, config, fetcher=None, translator=None, client=None):
        self.config = config
        self.fetcher = fetcher
        self.translator = translator
        # client HTTP possédé par le cache, fermé par close()
        self._client = client

    @classmethod
    def from_settings(cls, client=None):
        """Un seul client HTTP partagé entre Graph API et traduction.

        Si ``client`` est fourni, l'appelant reste responsable de sa fermeture.
        """
        config = NewsConfig.from_settings()
        owned = httpx.Client(timeout=15.0) if client is None else None
        http = client or owned
        fetcher = FacebookClient(config.page_id, config.page_token, config.api_version, client=http)
        try:
            translator = build_translator(config.translation, client=http)
        except TranslationError as exc:
            logger.warning("Traduction désactivée: %s", exc)
            translator = None
        return cls(config, fetcher=fetcher, translator=translator, client=owned)

    def close(self):
        if self._client is not None:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _now_ts(self):
        return int(timezone.now().timestamp())

    def source_collection(self):
        """Collection de la langue source, rafraîchie si le cache a expiré."""
        key = self.config.cache_key(self.config.source_language)
        entry = CacheEntry.read(key)
        if entry and self.config.refresh_hours > 0 and entry.age_hours() < self.config.refresh_hours:
            return entry.data

        fallback = entry.data if entry else None
        try:
            posts = self.fetcher.fetch_posts(self.config.posts_limit)
        except FacebookError as exc:
            logger.warning("Récupération Facebook impossible: %s", exc)
            if fallback:
                return fallback
            raise NewsUnavailable(str(exc)) from exc

        if not posts:
            # Rien de neuf: on garde l'ancien cache s'il existe
            if fallback:
                return fallback
            return {'cached_at': self._now_ts(), 'source_hash': source_hash([]), 'posts': []}

        collection = {
            'cached_at': self._now_ts(),
            'source_hash': source_hash(posts),
            'posts': posts,
        }
        CacheEntry.write(key, collection)
        return collection

    def derived_collection(self, lang):
        """Lecture seule: jamais de traduction synchrone ici."""
        entry = CacheEntry.read(self.config.cache_key(lang))
        if entry is None or not isinstance((entry.data or {}).get('posts'), list):
            raise NewsNotReady(lang)
        return entry.data

    def reconcile(self, source, lang):
        """Aligne la collection dérivée ``lang`` sur ``source``.

        Les posts dont l'empreinte est connue reprennent leur traduction telle
        quelle; les autres partent en un seul appel au fournisseur.
        """
        key = self.config.cache_key(lang)
        entry = CacheEntry.read(key)
        existing = entry.data if entry else None
        if existing and existing.get('source_hash') == source.get('source_hash'):
            return existing

        previous = {}
        for post in (existing or {}).get('posts') or []:
            if post.get('content_hash'):
                previous.setdefault(post['content_hash'], post)

        posts = []
        pending = []
        texts = []
        for post in source.get('posts') or []:
            digest = post.get('content_hash') or content_hash(post)
            cosmetic = {name: post.get(name) for name in COSMETIC_FIELDS}
            prior = previous.get(digest)
            if prior is not None:
                posts.append({'title': prior.get('title', ''), 'body': prior.get('body', ''), **cosmetic,
                              'content_hash': digest})
                continue
            item = {'title': post.get('title') or '', 'body': post.get('body') or '', **cosmetic,
                    'content_hash': digest}
            for name in ('title', 'body'):
                if item[name].strip():
                    pending.append((len(posts), name))
                    texts.append(item[name])
            posts.append(item)

        if texts:
            if self.translator is None:
                raise TranslationError('No translation provider configured')
            translated = self.translator.translate(texts, self.config.source_language, lang)
            for (index, name), text in zip(pending, translated):
                posts[index][name] = text

        derived = {
            'cached_at': self._now_ts(),
            'source_hash': source.get('source_hash'),
            'posts': posts,
        }
        CacheEntry.write(key, derived)
        logger.info("Cache %s réconcilié (%s textes traduits)", key, len(texts))
        return derived

    def refresh_derived(self, source):
        """Réconcilie toutes les langues dérivées; un échec n'interrompt pas les autres."""
        results = {}
        for lang in self.config.derived_languages:
            try:
                self.reconcile(source, lang)
                results[lang] = True
            except TranslationError as exc:
                logger.warning("Traduction %s non mise à jour: %s", lang, exc)
                results[lang] = False
            except Exception:
                # réponse inattendue du fournisseur
                logger.exception("Réconciliation %s en échec", lang)
                results[lang] = False
        return results
