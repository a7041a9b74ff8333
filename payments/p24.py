"""Client Przelewy24 (API REST v1): configuration, signatures, appels HTTP."""
import hashlib
import json
import logging
from dataclasses import dataclass

import httpx
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

SANDBOX_HOST = 'https://sandbox.przelewy24.pl'
SECURE_HOST = 'https://secure.przelewy24.pl'


class P24Error(Exception):
    def __init__(self, message, status_code=None, code=None, response=None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.response = response


@dataclass(frozen=True)
class P24Config:
    merchant_id: int
    pos_id: int
    api_key: str
    crc: str
    base_url: str
    redirect_host: str
    description: str = 'Darowizna'
    return_path: str = '/pl/dziekujemy'
    return_path_en: str = '/en/thank-you'
    status_path: str = '/api/p24/status'

    @classmethod
    def from_settings(cls):
        conf = getattr(settings, 'PAYMENTS', {})
        merchant_id = conf.get('P24_MERCHANT_ID')
        api_key = conf.get('P24_API_KEY')
        crc = conf.get('P24_CRC')
        if not merchant_id or not api_key or not crc:
            raise ImproperlyConfigured('Missing P24_MERCHANT_ID, P24_API_KEY or P24_CRC')
        host = SANDBOX_HOST if conf.get('P24_SANDBOX') else SECURE_HOST
        return cls(
            merchant_id=int(merchant_id),
            # posId = merchantId si non fourni (comptes historiques)
            pos_id=int(conf.get('P24_POS_ID') or merchant_id),
            api_key=api_key,
            crc=crc,
            base_url=conf.get('P24_BASE_URL') or f'{host}/api/v1',
            redirect_host=host,
            description=conf.get('P24_DESCRIPTION') or 'Darowizna',
            return_path=conf.get('P24_RETURN_PATH') or '/pl/dziekujemy',
            return_path_en=conf.get('P24_RETURN_PATH_EN') or '/en/thank-you',
            status_path=conf.get('P24_STATUS_PATH') or '/api/p24/status',
        )


def sha384_hex(payload):
    # P24 signe le JSON compact, dans l'ordre exact des clés
    raw = json.dumps(payload, separators=(',', ':'), ensure_ascii=False)
    return hashlib.sha384(raw.encode('utf-8')).hexdigest()


def register_sign(session_id, merchant_id, amount, currency, crc):
    return sha384_hex({
        'sessionId': session_id,
        'merchantId': merchant_id,
        'amount': amount,
        'currency': currency,
        'crc': crc,
    })


def verify_sign(session_id, order_id, amount, currency, crc):
    return sha384_hex({
        'sessionId': session_id,
        'orderId': order_id,
        'amount': amount,
        'currency': currency,
        'crc': crc,
    })


class P24Client:
    def __init__(self, config: P24Config, client: httpx.Client | None = None) -> None:
        self.config = config
        self._client = client or httpx.Client(timeout=30.0)

    @classmethod
    def from_settings(cls, client=None):
        return cls(P24Config.from_settings(), client=client)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def redirect_url(self, token):
        return f"{self.config.redirect_host}/trnRequest/{token}"

    def post_json(self, path, body):
        url = f"{self.config.base_url}{path}"
        # Auth REST: login = posId, mot de passe = clé API
        auth = (str(self.config.pos_id), self.config.api_key)
        try:
            resp = self._client.post(url, json=body, auth=auth, headers={'Accept': 'application/json'})
        except httpx.HTTPError as exc:
            raise P24Error(f"P24 transport error: {exc}") from exc

        text = resp.text
        try:
            data = resp.json() if text else None
        except ValueError:
            data = {'raw': text}

        if resp.is_error:
            data = data if isinstance(data, dict) else {}
            message = data.get('error') or data.get('message') or text or 'P24 error'
            logger.warning("P24 %s -> HTTP %s", path, resp.status_code)
            raise P24Error(
                f"P24 HTTP {resp.status_code}: {message}",
                status_code=resp.status_code,
                code=data.get('code') or resp.status_code,
                response=data,
            )
        return data

    def register(self, session_id, amount, currency, email, language, url_return, url_status):
        """Enregistre la transaction; renvoie (corps envoyé, réponse P24)."""
        cfg = self.config
        body = {
            'merchantId': cfg.merchant_id,
            'posId': cfg.pos_id,
            'sessionId': session_id,
            'amount': amount,
            'currency': currency,
            'description': cfg.description,
            'email': email or 'donor@example.com',
            'country': 'PL',
            'language': language,
            'urlReturn': url_return,
            'urlStatus': url_status,
            'sign': register_sign(session_id, cfg.merchant_id, amount, currency, cfg.crc),
        }
        return body, self.post_json('/transaction/register', body)

    def verify(self, session_id, order_id, amount, currency):
        cfg = self.config
        body = {
            'merchantId': cfg.merchant_id,
            'posId': cfg.pos_id,
            'sessionId': session_id,
            'amount': amount,
            'currency': currency,
            'orderId': order_id,
            'sign': verify_sign(session_id, order_id, amount, currency, cfg.crc),
        }
        return body, self.post_json('/transaction/verify', body)
