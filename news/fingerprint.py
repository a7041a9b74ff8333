"""Empreintes de contenu.

Seuls le titre et le corps comptent: date, lien et image peuvent changer
sans invalider les traductions déjà faites.
"""
import hashlib
import json
import re

WHITESPACE = re.compile(r'\s+')


def normalize_text(text):
    return WHITESPACE.sub(' ', text or '').strip()


def sha256_json(value):
    raw = json.dumps(value, separators=(',', ':'), ensure_ascii=False)
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


def content_hash(post):
    return sha256_json([normalize_text(post.get('title')), normalize_text(post.get('body'))])


def source_hash(posts):
    """Empreinte agrégée, sensible au nombre et à l'ordre des posts."""
    return sha256_json([p.get('content_hash') or content_hash(p) for p in posts])
