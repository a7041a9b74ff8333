import json
import logging
from urllib.parse import parse_qsl

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.http import HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from .forms import DonationForm
from .models import PaymentEvent
from .p24 import P24Client
from .services import (
    ORDER_KEYS,
    SESSION_KEYS,
    RegistrationError,
    WebhookHandler,
    pick,
    record_event,
    register_transaction,
    transaction_status,
)

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1_000_000


def json_error(message, status):
    return JsonResponse({'error': message}, status=status, json_dumps_params={'ensure_ascii': False})


def get_gateway():
    return P24Client.from_settings()


def parse_notification_body(raw, content_type):
    """P24 envoie du urlencoded; certains outils rejouent en JSON."""
    ct = (content_type or '').lower()
    if 'application/x-www-form-urlencoded' in ct or ('=' in raw and not raw.lstrip().startswith('{')):
        return dict(parse_qsl(raw, keep_blank_values=True))
    try:
        data = json.loads(raw or '{}')
    except ValueError:
        # dernier recours
        return dict(parse_qsl(raw, keep_blank_values=True))
    return data if isinstance(data, dict) else {}


@csrf_exempt
@require_POST
def create(request):
    if 'application/json' not in (request.content_type or '').lower():
        return json_error('Content-Type must be application/json', 415)
    if len(request.body) > MAX_BODY_BYTES:
        return json_error('Body too large', 413)
    try:
        body = json.loads(request.body.decode('utf-8') or '{}')
    except (UnicodeDecodeError, ValueError):
        body = {}
    if not isinstance(body, dict):
        body = {}

    form = DonationForm.from_payload(body)
    if not form.is_valid():
        return json_error(form.first_error(), 400)

    try:
        with get_gateway() as gateway:
            registration = register_transaction(
                form,
                gateway=gateway,
                build_url=request.build_absolute_uri,
                meta=body.get('meta'),
            )
    except RegistrationError as exc:
        return JsonResponse({'error': 'Błąd rejestracji płatności', 'details': str(exc)}, status=502,
                            json_dumps_params={'ensure_ascii': False})
    except Exception as exc:
        logger.exception("Création de transaction impossible")
        return JsonResponse({'error': 'Błąd serwera', 'details': str(exc)}, status=500,
                            json_dumps_params={'ensure_ascii': False})

    return JsonResponse(registration.as_dict())


@csrf_exempt
@require_POST
def webhook(request):
    raw = request.body.decode('utf-8', errors='replace')
    payload = parse_notification_body(raw, request.content_type)
    try:
        gateway = get_gateway()
    except ImproperlyConfigured:
        # configuration absente: on journalise quand même la notification
        logger.exception("Webhook P24 reçu sans configuration valide")
        record_event(PaymentEvent.TYPE_WEBHOOK, pick(payload, SESSION_KEYS), pick(payload, ORDER_KEYS), payload)
        outcome_failed = True
    else:
        with gateway:
            outcome_failed = WebhookHandler(gateway).handle(payload).failed

    always_ack = getattr(settings, 'PAYMENTS', {}).get('WEBHOOK_ALWAYS_ACK', True)
    if outcome_failed and not always_ack:
        return HttpResponse('Retry', status=502, content_type='text/plain')
    return HttpResponse('OK', content_type='text/plain')


@require_GET
def check(request):
    session_id = request.GET.get('sessionId')
    if not session_id:
        return json_error('Missing sessionId', 400)
    return JsonResponse({'transaction': transaction_status(session_id)})
