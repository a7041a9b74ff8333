"""Lecture des posts de la page Facebook (Graph API) et normalisation."""
import logging
import re

import httpx

from .fingerprint import content_hash

logger = logging.getLogger(__name__)

GRAPH_BASE = 'https://graph.facebook.com'
POST_FIELDS = ','.join([
    'message',
    'story',
    'created_time',
    'permalink_url',
    'full_picture',
    'attachments{media,subattachments,target,type}',
])
MAX_TITLE = 60
SENTENCE_END = re.compile(r'[.!?]')


class FacebookError(Exception):
    pass


def build_title(text):
    title = (text or '').strip()
    # 1. jusqu'à la première ponctuation de fin de phrase
    stop = SENTENCE_END.search(title)
    if stop:
        title = title[:stop.end()].strip()
    else:
        # 2. sinon la première ligne
        newline = title.find('\n')
        if newline != -1:
            title = title[:newline].strip()
    # 3. coupe dure
    if len(title) > MAX_TITLE:
        title = title[:MAX_TITLE - 1] + '…'
    return title


def _media_src(node):
    media = (node or {}).get('media') or {}
    image = media.get('image') or {}
    return image.get('src') or ''


def pick_image(item, resolve_target=None):
    """full_picture -> média de la pièce jointe -> sous-pièce jointe -> cible partagée."""
    if item.get('full_picture'):
        return item['full_picture']
    attachments = (item.get('attachments') or {}).get('data') or []
    for att in attachments:
        src = _media_src(att)
        if src:
            return src
        for sub in (att.get('subattachments') or {}).get('data') or []:
            src = _media_src(sub)
            if src:
                return src
    if resolve_target:
        for att in attachments:
            target_id = (att.get('target') or {}).get('id')
            if not target_id:
                continue
            src = resolve_target(target_id)
            if src:
                return src
    return ''


def normalize_post(item, resolve_target=None):
    """Renvoie le post normalisé, ou None si le post n'a pas de texte."""
    body = item.get('message') or item.get('story') or ''
    if not body:
        return None
    post = {
        'title': build_title(body),
        'body': body,
        'date': item.get('created_time') or None,
        'image': pick_image(item, resolve_target),
        'link': item.get('permalink_url') or None,
    }
    post['content_hash'] = content_hash(post)
    return post


class FacebookClient:
    def __init__(self, page_id, access_token, api_version='v18.0', client=None):
        self.page_id = page_id
        self.access_token = access_token
        self.api_version = api_version
        self._client = client or httpx.Client(timeout=15.0)

    def _get(self, path, params):
        url = f"{GRAPH_BASE}/{self.api_version}/{path}"
        params = dict(params, access_token=self.access_token)
        try:
            resp = self._client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise FacebookError(f"Graph API transport error: {exc}") from exc
        if resp.is_error:
            # pas de jeton dans les logs
            logger.warning("Graph API %s -> HTTP %s", path, resp.status_code)
            raise FacebookError(f"Graph API HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise FacebookError('Graph API returned invalid JSON') from exc

    def resolve_target_image(self, target_id):
        """Image d'un contenu partagé; vide si la cible n'est pas lisible."""
        try:
            data = self._get(str(target_id), {'fields': 'full_picture'})
        except FacebookError:
            return ''
        return (data or {}).get('full_picture') or ''

    def fetch_raw(self, limit):
        data = self._get(f"{self.page_id}/posts", {'fields': POST_FIELDS, 'limit': limit})
        items = (data or {}).get('data')
        if not isinstance(items, list):
            raise FacebookError('Unexpected Graph API response')
        return items

    def fetch_posts(self, limit=3):
        posts = []
        for item in self.fetch_raw(limit):
            post = normalize_post(item, self.resolve_target_image)
            if post:
                posts.append(post)
        return posts
