from django import forms
from django.conf import settings

TRUTHY = (True, 'true', 1, '1', 'on')


def is_truthy(value):
    return value in TRUTHY


class DonationForm(forms.Form):
    """Validation d'une demande de don (corps JSON aplati par la vue)."""
    amount = forms.IntegerField(error_messages={
        'required': 'Nieprawidłowa kwota',
        'invalid': 'Nieprawidłowa kwota',
    })
    currency = forms.CharField(max_length=8, required=False)
    email = forms.EmailField(required=False, error_messages={
        'invalid': 'Nieprawidłowy adres e-mail.',
    })
    consent_privacy = forms.Field(required=False)
    consent_terms = forms.Field(required=False)
    consents_version = forms.CharField(max_length=16, required=False)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        conf = getattr(settings, 'PAYMENTS', {})
        self.min_amount = int(conf.get('DONATION_MIN_AMOUNT', 100))
        self.max_amount = int(conf.get('DONATION_MAX_AMOUNT', 1_000_000))
        self.require_email = conf.get('REQUIRE_DONOR_EMAIL', True)
        self.default_consents_version = str(conf.get('CONSENTS_VERSION', '1'))

    def clean_amount(self):
        amount = self.cleaned_data['amount']
        if amount < self.min_amount:
            raise forms.ValidationError(f"Minimalna kwota to {self.min_amount / 100:.2f} PLN", code='min_amount')
        if amount > self.max_amount:
            raise forms.ValidationError(f"Maksymalna kwota to {self.max_amount / 100:.2f} PLN", code='max_amount')
        return amount

    def clean_currency(self):
        return (self.cleaned_data.get('currency') or 'PLN').upper()

    def clean_email(self):
        email = (self.cleaned_data.get('email') or '').strip()
        if self.require_email and not email:
            raise forms.ValidationError('Podaj e-mail (wyślemy potwierdzenie i podziękowanie).', code='email_required')
        return email

    def clean_consents_version(self):
        return self.cleaned_data.get('consents_version') or self.default_consents_version

    def clean(self):
        cleaned = super().clean()
        # Les deux consentements doivent être explicitement acceptés
        if not is_truthy(self.data.get('consent_privacy')) or not is_truthy(self.data.get('consent_terms')):
            raise forms.ValidationError('Wymagane zgody: prywatność i regulamin.', code='consents')
        cleaned['consent_privacy'] = True
        cleaned['consent_terms'] = True
        return cleaned

    def first_error(self):
        for errors in self.errors.values():
            if errors:
                return errors[0]
        return 'Nieprawidłowe dane'

    @classmethod
    def from_payload(cls, body):
        consents = body.get('consents') or {}
        if not isinstance(consents, dict):
            consents = {}
        amount = body.get('amountMinorUnits', body.get('amountGrosze'))
        return cls(data={
            'amount': amount,
            'currency': body.get('currency') or '',
            'email': body.get('email') or '',
            'consent_privacy': consents.get('privacy'),
            'consent_terms': consents.get('terms'),
            'consents_version': str(body.get('consentsVersion') or ''),
        })
