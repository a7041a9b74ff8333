"""Fournisseurs de traduction.

Chaque fournisseur traduit une liste de textes en une seule requête et
essaie ses points d'accès dans l'ordre, chacun avec son propre délai.
"""
import logging

import httpx

logger = logging.getLogger(__name__)

DEEPL_ENDPOINTS = ['https://api-free.deepl.com/v2/translate']
LIBRE_ENDPOINTS = [
    'https://translate.argosopentech.com/translate',
    'https://trans.zillyhuhn.com/translate',
    'https://translate.terraprint.co/translate',
]


class TranslationError(Exception):
    pass


def first_successful(candidates, call, timeout):
    """Renvoie le résultat du premier candidat qui répond.

    ``call(candidate, timeout)`` est appelé pour chaque candidat, dans l'ordre.
    Lève ``TranslationError`` (chaînée sur le dernier échec) si tous échouent.
    """
    last_exc = None
    for candidate in candidates:
        try:
            return call(candidate, timeout)
        except (httpx.HTTPError, TranslationError, ValueError) as exc:
            logger.warning("Candidat %s en échec: %s", candidate, exc)
            last_exc = exc
    if last_exc is None:
        raise TranslationError('No candidate configured')
    raise TranslationError(f"All candidates failed: {last_exc}") from last_exc


def _check_output(texts, out):
    if not isinstance(out, list) or len(out) != len(texts):
        raise TranslationError('Unexpected number of translations')
    if any(not str(t or '').strip() for t in out):
        raise TranslationError('Empty translation')
    return [str(t) for t in out]


class BaseTranslator:
    default_endpoints = []

    def __init__(self, endpoints=None, timeout=8.0, client=None):
        self.endpoints = list(endpoints or self.default_endpoints)
        self.timeout = timeout
        self._client = client or httpx.Client()

    def translate(self, texts, source, target):
        """Traduit ``texts`` (liste) de ``source`` vers ``target``, ordre conservé."""
        texts = list(texts)
        if not texts:
            return []
        return first_successful(
            self.endpoints,
            lambda endpoint, timeout: self._request(endpoint, texts, source, target, timeout),
            self.timeout,
        )

    def _request(self, endpoint, texts, source, target, timeout):
        raise NotImplementedError


class DeepLTranslator(BaseTranslator):
    default_endpoints = DEEPL_ENDPOINTS

    def __init__(self, api_key, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key

    def _request(self, endpoint, texts, source, target, timeout):
        resp = self._client.post(
            endpoint,
            data={'text': texts, 'source_lang': source.upper(), 'target_lang': target.upper()},
            headers={'Authorization': f'DeepL-Auth-Key {self.api_key}'},
            timeout=timeout,
        )
        if resp.is_error:
            raise TranslationError(f"DeepL HTTP {resp.status_code} @ {endpoint}")
        data = resp.json()
        translations = data.get('translations') if isinstance(data, dict) else None
        if not isinstance(translations, list) or not all(isinstance(t, dict) for t in translations):
            raise TranslationError(f"DeepL unexpected response @ {endpoint}")
        return _check_output(texts, [t.get('text') for t in translations])


class LibreTranslator(BaseTranslator):
    default_endpoints = LIBRE_ENDPOINTS

    def _request(self, endpoint, texts, source, target, timeout):
        resp = self._client.post(
            endpoint,
            json={'q': texts, 'source': source, 'target': target, 'format': 'text'},
            timeout=timeout,
        )
        if resp.is_error:
            raise TranslationError(f"LibreTranslate HTTP {resp.status_code} @ {endpoint}: {resp.text[:200]}")
        data = resp.json()
        if not isinstance(data, dict):
            raise TranslationError(f"LibreTranslate unexpected response @ {endpoint}")
        out = data.get('translatedText')
        if isinstance(out, str):
            out = [out]
        return _check_output(texts, out)


def build_translator(conf, client=None):
    """Construit le fournisseur décrit par ``NEWS['TRANSLATION']``."""
    provider = (conf.get('PROVIDER') or 'deepl').lower()
    kwargs = {
        'endpoints': conf.get('ENDPOINTS') or None,
        'timeout': float(conf.get('TIMEOUT') or 8),
        'client': client,
    }
    if provider == 'deepl':
        if not conf.get('API_KEY'):
            raise TranslationError('Missing DeepL API key')
        return DeepLTranslator(conf['API_KEY'], **kwargs)
    if provider in ('libre', 'libretranslate'):
        return LibreTranslator(**kwargs)
    raise TranslationError(f"Unknown translation provider: {provider}")
