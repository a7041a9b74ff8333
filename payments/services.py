"""Flux de paiement: création, notification P24 (webhook) et consultation du statut.

Toute la coordination entre requêtes concurrentes passe par des UPDATE
conditionnels (``QuerySet.update`` renvoie le nombre de lignes modifiées):
seul l'appel qui modifie effectivement la ligne poursuit la transition.
"""
import logging
import uuid
from dataclasses import dataclass

from django.utils import timezone

from .models import PaymentEvent, Transaction
from .notifications import send_thank_you
from .p24 import P24Error

logger = logging.getLogger(__name__)

SESSION_KEYS = ('sessionId', 'p24_session_id', 'p24_sessionid')
ORDER_KEYS = ('orderId', 'p24_order_id', 'p24_orderid')
AMOUNT_KEYS = ('amount', 'p24_amount')
CURRENCY_KEYS = ('currency', 'p24_currency')


class RegistrationError(Exception):
    def __init__(self, message, transaction=None):
        super().__init__(message)
        self.transaction = transaction


@dataclass
class Registration:
    session_id: str
    public_ref: str
    redirect_url: str

    def as_dict(self):
        return {'sessionId': self.session_id, 'publicRef': self.public_ref, 'redirectUrl': self.redirect_url}


@dataclass
class WebhookOutcome:
    action: str
    session_id: str | None = None
    notified: bool = False
    failed: bool = False


def make_public_ref(session_id):
    # Référence lisible dérivée de l'UUID (aucune donnée personnelle)
    return 'DON-' + session_id.replace('-', '')[:12].upper()


def to_int(value):
    """Entier strict: "2500.9" ou 2500.9 -> None (jamais tronqué)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def pick(payload, keys):
    for key in keys:
        value = payload.get(key)
        if value not in (None, ''):
            return value
    return None


def record_event(event_type, session_id=None, order_id=None, payload=None):
    """Écriture d'audit best-effort: ne doit jamais bloquer la réponse."""
    try:
        return PaymentEvent.objects.create(
            event_type=event_type,
            session_id=session_id,
            p24_order_id=str(order_id) if order_id else None,
            payload=payload or {},
        )
    except Exception:
        logger.exception("Écriture PaymentEvent %s impossible (session=%s)", event_type, session_id)
        return None


def register_transaction(form, gateway, build_url, meta=None):
    """Crée la transaction locale puis l'enregistre chez P24.

    ``form`` est un ``DonationForm`` valide, ``build_url`` transforme un
    chemin en URL absolue (``request.build_absolute_uri``).
    """
    data = form.cleaned_data
    session_id = str(uuid.uuid4())
    public_ref = make_public_ref(session_id)
    amount = data['amount']
    currency = data['currency']
    email = data.get('email') or None

    page = str((meta or {}).get('page') or '') if isinstance(meta, dict) else ''
    is_en = page.startswith('en/')
    cfg = gateway.config
    return_path = cfg.return_path_en if is_en else cfg.return_path
    url_return = build_url(f"{return_path}?sessionId={session_id}")
    url_status = build_url(cfg.status_path)

    # 1) Ligne locale d'abord, même si P24 échoue ensuite
    tx = Transaction.objects.create(
        session_id=session_id,
        public_ref=public_ref,
        amount=amount,
        currency=currency,
        email=email,
        consents={'privacy': data['consent_privacy'], 'terms': data['consent_terms']},
        consents_version=data['consents_version'],
        meta=meta if isinstance(meta, dict) else None,
        status=Transaction.STATUS_CREATED,
    )

    # 2) Enregistrement P24
    try:
        request_body, response = gateway.register(
            session_id=session_id,
            amount=amount,
            currency=currency,
            email=email,
            language='en' if is_en else 'pl',
            url_return=url_return,
            url_status=url_status,
        )
    except P24Error as exc:
        logger.warning("Enregistrement P24 échoué pour %s: %s", public_ref, exc)
        raise RegistrationError(str(exc), transaction=tx) from exc

    response = response or {}
    inner = response.get('data') if isinstance(response.get('data'), dict) else {}
    token = inner.get('token') or response.get('token')
    order_id = inner.get('orderId') or response.get('orderId')
    if not token:
        logger.warning("Réponse P24 sans token pour %s", public_ref)
        raise RegistrationError('P24 register: missing token in response', transaction=tx)

    redirect_url = gateway.redirect_url(token)

    # 3) created -> registered (jamais depuis paid)
    Transaction.objects.filter(session_id=session_id, status=Transaction.STATUS_CREATED).update(
        status=Transaction.STATUS_REGISTERED,
        p24_order_id=str(order_id) if order_id else None,
        p24_token=token,
        redirect_url=redirect_url,
        register_payload={'request': request_body, 'response': response},
        updated_at=timezone.now(),
    )
    logger.info("Transaction %s enregistrée chez P24", public_ref)
    return Registration(session_id=session_id, public_ref=public_ref, redirect_url=redirect_url)


class WebhookHandler:
    """Rapproche une notification P24 (livrée au moins une fois) de l'état local."""

    def __init__(self, gateway, notify=send_thank_you):
        self.gateway = gateway
        self.notify = notify

    def handle(self, payload):
        payload = payload if isinstance(payload, dict) else {}
        session_id = pick(payload, SESSION_KEYS)
        order_id = pick(payload, ORDER_KEYS)

        # Journal d'abord, même sans identifiant
        record_event(PaymentEvent.TYPE_WEBHOOK, session_id, order_id, payload)

        if not session_id:
            return WebhookOutcome('ignored')

        try:
            return self._reconcile(str(session_id), order_id, payload)
        except Exception as exc:
            logger.exception("Webhook P24 en échec (session=%s)", session_id)
            record_event(PaymentEvent.TYPE_ERROR, session_id, order_id, {'message': str(exc)})
            return WebhookOutcome('error', session_id, failed=True)

    def _reconcile(self, session_id, order_id, payload):
        tx = Transaction.objects.filter(session_id=session_id).first()
        if tx is None:
            return WebhookOutcome('unknown', session_id)
        if tx.is_paid:
            return WebhookOutcome('already_paid', session_id)

        # Montant et devise sont figés à la création
        sent_amount = pick(payload, AMOUNT_KEYS)
        sent_currency = pick(payload, CURRENCY_KEYS)
        if (sent_amount is not None and to_int(sent_amount) != tx.amount) or \
                (sent_currency is not None and str(sent_currency).upper() != tx.currency.upper()):
            record_event(PaymentEvent.TYPE_ERROR, session_id, order_id, {
                'message': 'amount/currency mismatch',
                'expected': {'amount': tx.amount, 'currency': tx.currency},
                'received': {'amount': sent_amount, 'currency': sent_currency},
            })
            return WebhookOutcome('mismatch', session_id)

        order_id = order_id or tx.p24_order_id
        if not order_id:
            # verify impossible sans orderId
            return WebhookOutcome('no_order', session_id)

        order_int = to_int(order_id)
        try:
            request_body, response = self.gateway.verify(
                session_id=session_id,
                order_id=order_int if order_int is not None else order_id,
                amount=tx.amount,
                currency=tx.currency,
            )
        except P24Error as exc:
            logger.warning("Vérification P24 refusée (session=%s): %s", session_id, exc)
            record_event(PaymentEvent.TYPE_ERROR, session_id, order_id, {
                'message': str(exc),
                'status_code': exc.status_code,
                'response': exc.response,
            })
            return WebhookOutcome('verify_failed', session_id, failed=True)

        paid_at = timezone.now()
        updated = Transaction.objects.filter(session_id=session_id).exclude(status=Transaction.STATUS_PAID).update(
            status=Transaction.STATUS_PAID,
            paid_at=paid_at,
            p24_order_id=str(order_id),
            verify_payload={'request': request_body, 'response': response},
            updated_at=paid_at,
        )
        record_event(PaymentEvent.TYPE_VERIFY, session_id, order_id, {'request': request_body, 'response': response})

        if not updated:
            # Une livraison concurrente a déjà effectué la transition
            return WebhookOutcome('already_paid', session_id)

        logger.info("Transaction %s payée", tx.public_ref)
        notified = self._notify_once(session_id, paid_at)
        return WebhookOutcome('paid', session_id, notified=notified)

    def _notify_once(self, session_id, paid_at):
        tx = Transaction.objects.get(session_id=session_id)
        if not tx.email or tx.notification_sent_at:
            return False
        try:
            sent = self.notify(tx, paid_at)
        except Exception as exc:
            logger.exception("Email de remerciement non envoyé (session=%s)", session_id)
            Transaction.objects.filter(session_id=session_id).update(notification_error=str(exc))
            return False
        if not sent:
            return False
        marked = Transaction.objects.filter(session_id=session_id, notification_sent_at__isnull=True).update(
            notification_sent_at=timezone.now(),
            notification_error=None,
        )
        return bool(marked)


def transaction_status(session_id):
    tx = Transaction.objects.filter(session_id=session_id).first()
    return tx.as_status_dict() if tx else None
