from django.conf import settings
from django.core.mail import EmailMessage


def format_amount(amount):
    # grosze -> "12.50"
    return f"{int(amount) / 100:.2f}"


def send_thank_you(tx, paid_at):
    """Envoie l'email de remerciement. Renvoie False si l'envoi n'est pas configuré."""
    from_email = getattr(settings, 'DEFAULT_FROM_EMAIL', '')
    if not from_email or not tx.email:
        return False

    org_name = getattr(settings, 'ORG_NAME', 'Fundacja')
    support_url = getattr(settings, 'SUPPORT_URL', '')
    lines = [
        f"Dziękujemy za wsparcie {org_name}.",
        '',
        f"Kwota: {format_amount(tx.amount)} {tx.currency}",
        f"Data potwierdzenia: {paid_at.isoformat()}",
        f"Numer wpłaty: {tx.public_ref}",
        f"Id transakcji Przelewy24: {tx.p24_order_id}" if tx.p24_order_id else None,
        '',
        f"Kontakt: {support_url}" if support_url else None,
        '',
        'Pozdrawiamy,',
        org_name,
    ]
    body = '\n'.join(line for line in lines if line is not None)
    email = EmailMessage(
        getattr(settings, 'EMAIL_SUBJECT', 'Dziękujemy za wsparcie!'),
        body,
        from_email,
        [tx.email],
    )
    # Les erreurs remontent: l'appelant les consigne sur la transaction
    email.send(fail_silently=False)
    return True
