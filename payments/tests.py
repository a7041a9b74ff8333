import base64
import hashlib
import json
from smtplib import SMTPException
from unittest import mock

import httpx
from django.core import mail
from django.test import Client, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from payments.forms import DonationForm
from payments.models import PaymentEvent, Transaction
from payments.p24 import P24Client, P24Config, P24Error, register_sign, verify_sign
from payments.services import (
    RegistrationError,
    WebhookHandler,
    make_public_ref,
    register_transaction,
)

P24_SETTINGS = {
    'P24_MERCHANT_ID': '11111',
    'P24_POS_ID': '',
    'P24_API_KEY': 'api-key',
    'P24_CRC': 'crc-secret',
    'P24_SANDBOX': True,
    'P24_BASE_URL': '',
    'P24_DESCRIPTION': 'Darowizna',
    'P24_RETURN_PATH': '/pl/dziekujemy',
    'P24_RETURN_PATH_EN': '/en/thank-you',
    'P24_STATUS_PATH': '/api/p24/status',
    'DONATION_MIN_AMOUNT': 100,
    'DONATION_MAX_AMOUNT': 1000000,
    'REQUIRE_DONOR_EMAIL': True,
    'CONSENTS_VERSION': '1',
    'WEBHOOK_ALWAYS_ACK': True,
}


def make_gateway(handler):
    """Client P24 branché sur un transport simulé."""
    config = P24Config(
        merchant_id=11111,
        pos_id=11111,
        api_key='api-key',
        crc='crc-secret',
        base_url='https://sandbox.przelewy24.pl/api/v1',
        redirect_host='https://sandbox.przelewy24.pl',
    )
    return P24Client(config, client=httpx.Client(transport=httpx.MockTransport(handler)))


class FakeP24:
    """Enregistre les requêtes reçues et répond comme P24."""

    def __init__(self, register_status=200, verify_status=200, token='TOKEN-123', order_id=987654):
        self.register_status = register_status
        self.verify_status = verify_status
        self.token = token
        self.order_id = order_id
        self.requests = []
        self.on_verify = None

    def __call__(self, request):
        body = json.loads(request.content)
        self.requests.append((request.url.path, body))
        if request.url.path.endswith('/transaction/register'):
            if self.register_status != 200:
                return httpx.Response(self.register_status, json={'error': 'Incorrect sign', 'code': 400})
            data = {'token': self.token} if self.token else {}
            if self.order_id:
                data['orderId'] = self.order_id
            return httpx.Response(200, json={'data': data, 'responseCode': 0})
        if request.url.path.endswith('/transaction/verify'):
            if self.on_verify:
                hook, self.on_verify = self.on_verify, None
                hook()
            if self.verify_status != 200:
                return httpx.Response(self.verify_status, json={'error': 'Transaction not found', 'code': 400})
            return httpx.Response(200, json={'data': {'status': 'success'}, 'responseCode': 0})
        return httpx.Response(404)

    def paths(self):
        return [path for path, _ in self.requests]


def valid_form(**overrides):
    payload = {
        'amountMinorUnits': 2500,
        'email': 'donor@example.com',
        'consents': {'privacy': True, 'terms': True},
    }
    payload.update(overrides)
    form = DonationForm.from_payload(payload)
    assert form.is_valid(), form.errors
    return form


def make_tx(session_id='sess-1', status=Transaction.STATUS_REGISTERED, **kwargs):
    defaults = {
        'public_ref': make_public_ref(session_id),
        'amount': 2500,
        'currency': 'PLN',
        'email': 'donor@example.com',
        'status': status,
        'p24_order_id': '987654',
    }
    defaults.update(kwargs)
    return Transaction.objects.create(session_id=session_id, **defaults)


class SignatureTests(TestCase):
    def test_register_sign_is_sha384_of_compact_json(self):
        expected_raw = '{"sessionId":"s-1","merchantId":11111,"amount":2500,"currency":"PLN","crc":"crc"}'
        self.assertEqual(
            register_sign('s-1', 11111, 2500, 'PLN', 'crc'),
            hashlib.sha384(expected_raw.encode()).hexdigest(),
        )

    def test_verify_sign_uses_order_id(self):
        expected_raw = '{"sessionId":"s-1","orderId":42,"amount":2500,"currency":"PLN","crc":"crc"}'
        self.assertEqual(
            verify_sign('s-1', 42, 2500, 'PLN', 'crc'),
            hashlib.sha384(expected_raw.encode()).hexdigest(),
        )
        self.assertNotEqual(verify_sign('s-1', 42, 2500, 'PLN', 'crc'), verify_sign('s-1', 43, 2500, 'PLN', 'crc'))

    def test_public_ref_derived_from_session(self):
        self.assertEqual(make_public_ref('0f8fad5b-d9cb-469f-a165-70867728950e'), 'DON-0F8FAD5BD9CB')


class P24ClientTests(TestCase):
    def test_http_error_raises_with_code(self):
        gateway = make_gateway(lambda request: httpx.Response(400, json={'error': 'Incorrect sign', 'code': 400}))
        with self.assertRaises(P24Error) as ctx:
            gateway.post_json('/transaction/verify', {})
        self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(ctx.exception.code, 400)
        self.assertIn('Incorrect sign', str(ctx.exception))

    def test_basic_auth_uses_pos_id_and_api_key(self):
        seen = {}

        def handler(request):
            seen['auth'] = request.headers['Authorization']
            return httpx.Response(200, json={'data': {}})

        make_gateway(handler).post_json('/testAccess', {})
        self.assertEqual(seen['auth'], 'Basic ' + base64.b64encode(b'11111:api-key').decode())

    @override_settings(PAYMENTS={**P24_SETTINGS, 'P24_API_KEY': ''})
    def test_missing_credentials(self):
        from django.core.exceptions import ImproperlyConfigured
        with self.assertRaises(ImproperlyConfigured):
            P24Config.from_settings()

    @override_settings(PAYMENTS=P24_SETTINGS)
    def test_config_defaults_pos_id_and_sandbox_host(self):
        config = P24Config.from_settings()
        self.assertEqual(config.pos_id, 11111)
        self.assertEqual(config.base_url, 'https://sandbox.przelewy24.pl/api/v1')


@override_settings(PAYMENTS=P24_SETTINGS)
class DonationFormTests(TestCase):
    def test_amount_below_minimum_rejected(self):
        form = DonationForm.from_payload({
            'amountMinorUnits': 50,
            'email': 'a@example.com',
            'consents': {'privacy': True, 'terms': True},
        })
        self.assertFalse(form.is_valid())
        self.assertTrue(form.has_error('amount', 'min_amount'))
        self.assertEqual(form.first_error(), 'Minimalna kwota to 1.00 PLN')

    def test_amount_above_maximum_rejected(self):
        form = DonationForm.from_payload({
            'amountGrosze': 1000001,
            'email': 'a@example.com',
            'consents': {'privacy': True, 'terms': True},
        })
        self.assertFalse(form.is_valid())
        self.assertTrue(form.has_error('amount', 'max_amount'))

    def test_non_numeric_amount(self):
        form = DonationForm.from_payload({'amountMinorUnits': 'abc', 'email': 'a@example.com',
                                          'consents': {'privacy': True, 'terms': True}})
        self.assertFalse(form.is_valid())
        self.assertEqual(form.first_error(), 'Nieprawidłowa kwota')

    def test_consents_must_be_affirmative(self):
        form = DonationForm.from_payload({'amountMinorUnits': 1000, 'email': 'a@example.com',
                                          'consents': {'privacy': True, 'terms': 'no'}})
        self.assertFalse(form.is_valid())
        self.assertIn('Wymagane zgody', form.first_error())

    def test_consents_accept_string_flags(self):
        form = DonationForm.from_payload({'amountMinorUnits': 1000, 'email': 'a@example.com',
                                          'consents': {'privacy': 'on', 'terms': '1'}})
        self.assertTrue(form.is_valid())

    def test_email_required_by_default(self):
        form = DonationForm.from_payload({'amountMinorUnits': 1000, 'consents': {'privacy': True, 'terms': True}})
        self.assertFalse(form.is_valid())
        self.assertTrue(form.has_error('email', 'email_required'))

    @override_settings(PAYMENTS={**P24_SETTINGS, 'REQUIRE_DONOR_EMAIL': False})
    def test_email_optional_when_configured(self):
        form = DonationForm.from_payload({'amountMinorUnits': 1000, 'consents': {'privacy': True, 'terms': True}})
        self.assertTrue(form.is_valid())
        self.assertEqual(form.cleaned_data['currency'], 'PLN')
        self.assertEqual(form.cleaned_data['consents_version'], '1')


@override_settings(PAYMENTS=P24_SETTINGS)
class RegistrationTests(TestCase):
    def build_url(self, path):
        return f"https://www.example.org{path}"

    def test_registers_and_stores_redirect(self):
        fake = FakeP24()
        registration = register_transaction(valid_form(), make_gateway(fake), self.build_url)

        tx = Transaction.objects.get(session_id=registration.session_id)
        self.assertEqual(tx.status, Transaction.STATUS_REGISTERED)
        self.assertEqual(tx.p24_token, 'TOKEN-123')
        self.assertEqual(tx.p24_order_id, '987654')
        self.assertEqual(registration.redirect_url, 'https://sandbox.przelewy24.pl/trnRequest/TOKEN-123')
        self.assertEqual(registration.public_ref, make_public_ref(registration.session_id))

        path, body = fake.requests[0]
        self.assertTrue(path.endswith('/transaction/register'))
        self.assertEqual(body['amount'], 2500)
        self.assertEqual(body['language'], 'pl')
        self.assertEqual(body['urlStatus'], 'https://www.example.org/api/p24/status')
        self.assertIn(f"/pl/dziekujemy?sessionId={registration.session_id}", body['urlReturn'])
        self.assertEqual(body['sign'], register_sign(registration.session_id, 11111, 2500, 'PLN', 'crc-secret'))

    def test_english_page_uses_english_return(self):
        fake = FakeP24()
        register_transaction(valid_form(), make_gateway(fake), self.build_url, meta={'page': 'en/index.html'})
        _, body = fake.requests[0]
        self.assertEqual(body['language'], 'en')
        self.assertIn('/en/thank-you?sessionId=', body['urlReturn'])

    def test_failed_registration_keeps_created_row(self):
        with self.assertRaises(RegistrationError) as ctx:
            register_transaction(valid_form(), make_gateway(FakeP24(register_status=400)), self.build_url)
        tx = ctx.exception.transaction
        tx.refresh_from_db()
        self.assertEqual(tx.status, Transaction.STATUS_CREATED)
        self.assertIsNone(tx.redirect_url)

    def test_missing_token_is_failure(self):
        with self.assertRaises(RegistrationError):
            register_transaction(valid_form(), make_gateway(FakeP24(token=None)), self.build_url)
        self.assertEqual(Transaction.objects.get().status, Transaction.STATUS_CREATED)


@override_settings(PAYMENTS=P24_SETTINGS, DEFAULT_FROM_EMAIL='fundacja@example.org')
class WebhookHandlerTests(TestCase):
    def notification(self, session_id='sess-1', **extra):
        payload = {'sessionId': session_id, 'orderId': '987654', 'amount': '2500', 'currency': 'PLN'}
        payload.update(extra)
        return payload

    def test_unknown_session_is_acknowledged(self):
        fake = FakeP24()
        outcome = WebhookHandler(make_gateway(fake)).handle(self.notification('abc'))
        self.assertEqual(outcome.action, 'unknown')
        self.assertFalse(outcome.failed)
        self.assertFalse(Transaction.objects.exists())
        event = PaymentEvent.objects.get()
        self.assertEqual(event.event_type, PaymentEvent.TYPE_WEBHOOK)
        self.assertEqual(event.session_id, 'abc')
        self.assertEqual(fake.requests, [])

    def test_missing_session_is_recorded_and_ignored(self):
        outcome = WebhookHandler(make_gateway(FakeP24())).handle({'foo': 'bar'})
        self.assertEqual(outcome.action, 'ignored')
        self.assertEqual(PaymentEvent.objects.get().payload, {'foo': 'bar'})

    def test_marks_paid_and_sends_one_email(self):
        make_tx()
        fake = FakeP24()
        outcome = WebhookHandler(make_gateway(fake)).handle(self.notification())

        self.assertEqual(outcome.action, 'paid')
        self.assertTrue(outcome.notified)
        tx = Transaction.objects.get()
        self.assertEqual(tx.status, Transaction.STATUS_PAID)
        self.assertIsNotNone(tx.paid_at)
        self.assertIsNotNone(tx.notification_sent_at)
        self.assertEqual(tx.verify_payload['response'], {'data': {'status': 'success'}, 'responseCode': 0})
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['donor@example.com'])
        self.assertIn('Kwota: 25.00 PLN', mail.outbox[0].body)
        self.assertIn(tx.public_ref, mail.outbox[0].body)

        _, body = fake.requests[0]
        self.assertEqual(body['orderId'], 987654)
        self.assertEqual(body['sign'], verify_sign('sess-1', 987654, 2500, 'PLN', 'crc-secret'))
        self.assertEqual(
            list(PaymentEvent.objects.order_by('id').values_list('event_type', flat=True)),
            [PaymentEvent.TYPE_WEBHOOK, PaymentEvent.TYPE_VERIFY],
        )

    def test_retry_after_paid_changes_nothing(self):
        make_tx()
        fake = FakeP24()
        handler = WebhookHandler(make_gateway(fake))
        handler.handle(self.notification())
        paid = Transaction.objects.get()

        outcome = handler.handle(self.notification())
        self.assertEqual(outcome.action, 'already_paid')
        again = Transaction.objects.get()
        self.assertEqual(again.paid_at, paid.paid_at)
        self.assertEqual(again.notification_sent_at, paid.notification_sent_at)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(fake.paths().count('/api/v1/transaction/verify'), 1)
        self.assertEqual(PaymentEvent.objects.filter(event_type=PaymentEvent.TYPE_WEBHOOK).count(), 2)

    def test_concurrent_deliveries_single_transition(self):
        make_tx()
        fake = FakeP24()
        handler = WebhookHandler(make_gateway(fake))
        inner = {}
        # La seconde livraison arrive pendant la vérification de la première
        fake.on_verify = lambda: inner.setdefault('outcome', handler.handle(self.notification()))

        outer = handler.handle(self.notification())

        self.assertEqual(inner['outcome'].action, 'paid')
        self.assertEqual(outer.action, 'already_paid')
        self.assertEqual(Transaction.objects.get().status, Transaction.STATUS_PAID)
        self.assertEqual(len(mail.outbox), 1)

    def test_verify_failure_recorded_and_not_paid(self):
        make_tx()
        outcome = WebhookHandler(make_gateway(FakeP24(verify_status=400))).handle(self.notification())
        self.assertEqual(outcome.action, 'verify_failed')
        self.assertTrue(outcome.failed)
        self.assertEqual(Transaction.objects.get().status, Transaction.STATUS_REGISTERED)
        error = PaymentEvent.objects.get(event_type=PaymentEvent.TYPE_ERROR)
        self.assertEqual(error.payload['status_code'], 400)
        self.assertEqual(len(mail.outbox), 0)

    def test_amount_mismatch_not_verified(self):
        make_tx()
        fake = FakeP24()
        outcome = WebhookHandler(make_gateway(fake)).handle(self.notification(amount='100'))
        self.assertEqual(outcome.action, 'mismatch')
        self.assertEqual(fake.requests, [])
        self.assertEqual(Transaction.objects.get().status, Transaction.STATUS_REGISTERED)
        self.assertTrue(PaymentEvent.objects.filter(event_type=PaymentEvent.TYPE_ERROR).exists())

    def test_paid_status_never_regresses(self):
        paid_at = timezone.now()
        make_tx(status=Transaction.STATUS_PAID, paid_at=paid_at)
        fake = FakeP24()
        outcome = WebhookHandler(make_gateway(fake)).handle(self.notification(amount='1'))
        self.assertEqual(outcome.action, 'already_paid')
        tx = Transaction.objects.get()
        self.assertEqual(tx.status, Transaction.STATUS_PAID)
        self.assertEqual(tx.paid_at, paid_at)
        self.assertEqual(fake.requests, [])

    def test_fractional_amount_is_mismatch(self):
        make_tx()
        fake = FakeP24()
        handler = WebhookHandler(make_gateway(fake))
        self.assertEqual(handler.handle(self.notification(amount='2500.9')).action, 'mismatch')
        self.assertEqual(handler.handle(self.notification(amount=2500.9)).action, 'mismatch')
        self.assertEqual(fake.requests, [])
        self.assertEqual(Transaction.objects.get().status, Transaction.STATUS_REGISTERED)

    def test_integral_amount_forms_accepted(self):
        make_tx()
        outcome = WebhookHandler(make_gateway(FakeP24())).handle(self.notification(amount=2500.0))
        self.assertEqual(outcome.action, 'paid')

    def test_order_id_falls_back_to_stored_value(self):
        make_tx()
        fake = FakeP24()
        payload = self.notification()
        payload.pop('orderId')
        outcome = WebhookHandler(make_gateway(fake)).handle(payload)
        self.assertEqual(outcome.action, 'paid')
        self.assertEqual(fake.requests[0][1]['orderId'], 987654)

    def test_form_field_aliases(self):
        make_tx()
        outcome = WebhookHandler(make_gateway(FakeP24())).handle({
            'p24_session_id': 'sess-1', 'p24_order_id': '987654', 'p24_amount': '2500', 'p24_currency': 'PLN',
        })
        self.assertEqual(outcome.action, 'paid')

    def test_notification_failure_does_not_fail_webhook(self):
        make_tx()

        def broken_notify(tx, paid_at):
            raise SMTPException('smtp down')

        outcome = WebhookHandler(make_gateway(FakeP24()), notify=broken_notify).handle(self.notification())
        self.assertEqual(outcome.action, 'paid')
        self.assertFalse(outcome.notified)
        tx = Transaction.objects.get()
        self.assertEqual(tx.status, Transaction.STATUS_PAID)
        self.assertIsNone(tx.notification_sent_at)
        self.assertEqual(tx.notification_error, 'smtp down')

    def test_no_email_no_notification(self):
        make_tx(email=None)
        outcome = WebhookHandler(make_gateway(FakeP24())).handle(self.notification())
        self.assertEqual(outcome.action, 'paid')
        self.assertEqual(len(mail.outbox), 0)

    def test_events_are_insert_only(self):
        event = PaymentEvent.objects.create(event_type=PaymentEvent.TYPE_VERIFY, payload={})
        with self.assertRaises(ValueError):
            event.save()
        with self.assertRaises(ValueError):
            event.delete()


@override_settings(PAYMENTS=P24_SETTINGS, DEFAULT_FROM_EMAIL='fundacja@example.org')
class PaymentViewsTests(TestCase):
    def setUp(self):
        self.client = Client()
        self.fake = FakeP24()
        self.gateway = make_gateway(self.fake)
        patcher = mock.patch('payments.views.get_gateway', return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)

    def post_json(self, url, payload):
        return self.client.post(url, data=json.dumps(payload), content_type='application/json')

    def test_create_returns_redirect(self):
        resp = self.post_json(reverse('payments:create'), {
            'amountMinorUnits': 5000,
            'email': 'donor@example.com',
            'consents': {'privacy': True, 'terms': True},
            'meta': {'page': 'index.html'},
        })
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(set(data), {'sessionId', 'publicRef', 'redirectUrl'})
        tx = Transaction.objects.get(session_id=data['sessionId'])
        self.assertEqual(tx.meta, {'page': 'index.html'})
        self.assertEqual(tx.consents, {'privacy': True, 'terms': True})

    def test_create_rejects_small_amount(self):
        resp = self.post_json(reverse('payments:create'), {
            'amountMinorUnits': 50,
            'email': 'donor@example.com',
            'consents': {'privacy': True, 'terms': True},
        })
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()['error'], 'Minimalna kwota to 1.00 PLN')
        self.assertFalse(Transaction.objects.exists())

    def test_create_requires_json(self):
        resp = self.client.post(reverse('payments:create'), {'amountMinorUnits': 5000})
        self.assertEqual(resp.status_code, 415)

    def test_create_rejects_get(self):
        self.assertEqual(self.client.get(reverse('payments:create')).status_code, 405)

    def test_create_upstream_failure(self):
        self.fake.register_status = 400
        resp = self.post_json(reverse('payments:create'), {
            'amountMinorUnits': 5000,
            'email': 'donor@example.com',
            'consents': {'privacy': True, 'terms': True},
        })
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(Transaction.objects.get().status, Transaction.STATUS_CREATED)

    def test_webhook_form_encoded(self):
        make_tx()
        resp = self.client.post(
            reverse('payments:webhook'),
            data='sessionId=sess-1&orderId=987654&amount=2500&currency=PLN',
            content_type='application/x-www-form-urlencoded',
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.content, b'OK')
        self.assertEqual(Transaction.objects.get().status, Transaction.STATUS_PAID)

    def test_webhook_json(self):
        make_tx()
        resp = self.post_json(reverse('payments:webhook'), {'sessionId': 'sess-1', 'orderId': 987654})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(Transaction.objects.get().status, Transaction.STATUS_PAID)

    def test_http_client_closed_after_create(self):
        self.post_json(reverse('payments:create'), {
            'amountMinorUnits': 5000,
            'email': 'donor@example.com',
            'consents': {'privacy': True, 'terms': True},
        })
        self.assertTrue(self.gateway._client.is_closed)

    def test_http_client_closed_after_webhook(self):
        make_tx()
        self.fake.verify_status = 500
        self.post_json(reverse('payments:webhook'), {'sessionId': 'sess-1', 'orderId': 987654})
        self.assertTrue(self.gateway._client.is_closed)

    def test_webhook_unknown_session(self):
        resp = self.post_json(reverse('payments:webhook'), {'sessionId': 'abc', 'orderId': 1})
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(Transaction.objects.exists())
        self.assertEqual(PaymentEvent.objects.get().session_id, 'abc')

    def test_webhook_wrong_method(self):
        self.assertEqual(self.client.get(reverse('payments:webhook')).status_code, 405)
        self.assertFalse(PaymentEvent.objects.exists())

    def test_webhook_acknowledges_verify_failure_by_default(self):
        make_tx()
        self.fake.verify_status = 500
        resp = self.post_json(reverse('payments:webhook'), {'sessionId': 'sess-1', 'orderId': 987654})
        self.assertEqual(resp.status_code, 200)

    @override_settings(PAYMENTS={**P24_SETTINGS, 'WEBHOOK_ALWAYS_ACK': False})
    def test_webhook_can_surface_verify_failure(self):
        make_tx()
        self.fake.verify_status = 500
        resp = self.post_json(reverse('payments:webhook'), {'sessionId': 'sess-1', 'orderId': 987654})
        self.assertEqual(resp.status_code, 502)

    @override_settings(PAYMENTS={**P24_SETTINGS, 'WEBHOOK_ALWAYS_ACK': False})
    def test_webhook_unknown_session_still_acknowledged_without_policy(self):
        resp = self.post_json(reverse('payments:webhook'), {'sessionId': 'abc', 'orderId': 1})
        self.assertEqual(resp.status_code, 200)

    def test_check_returns_projection(self):
        tx = make_tx()
        resp = self.client.get(reverse('payments:check'), {'sessionId': 'sess-1'})
        self.assertEqual(resp.status_code, 200)
        data = resp.json()['transaction']
        self.assertEqual(data['publicRef'], tx.public_ref)
        self.assertEqual(data['status'], 'registered')
        self.assertEqual(data['amount'], 2500)
        self.assertIsNone(data['paidAt'])

    def test_check_unknown_session(self):
        resp = self.client.get(reverse('payments:check'), {'sessionId': 'nope'})
        self.assertEqual(resp.json(), {'transaction': None})

    def test_check_requires_session(self):
        self.assertEqual(self.client.get(reverse('payments:check')).status_code, 400)


__all__ = [
    'SignatureTests',
    'P24ClientTests',
    'DonationFormTests',
    'RegistrationTests',
    'WebhookHandlerTests',
    'PaymentViewsTests',
]
