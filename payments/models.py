from django.db import models


class Transaction(models.Model):
    STATUS_CREATED = 'created'
    STATUS_REGISTERED = 'registered'
    STATUS_PAID = 'paid'
    STATUS_CHOICES = [
        (STATUS_CREATED, "Créée"),
        (STATUS_REGISTERED, "Enregistrée chez P24"),
        (STATUS_PAID, "Payée"),
    ]

    session_id = models.CharField(max_length=64, unique=True)
    public_ref = models.CharField(max_length=32, db_index=True)
    amount = models.PositiveIntegerField(help_text="Montant en plus petite unité (grosze)")
    currency = models.CharField(max_length=8, default="PLN")
    email = models.EmailField(blank=True, null=True)
    consents = models.JSONField(default=dict, blank=True)
    consents_version = models.CharField(max_length=16, blank=True)
    meta = models.JSONField(blank=True, null=True)
    status = models.CharField(max_length=12, choices=STATUS_CHOICES, default=STATUS_CREATED)
    p24_order_id = models.CharField(max_length=64, blank=True, null=True)
    p24_token = models.CharField(max_length=128, blank=True, null=True)
    redirect_url = models.URLField(max_length=300, blank=True, null=True)
    register_payload = models.JSONField(blank=True, null=True)
    verify_payload = models.JSONField(blank=True, null=True)
    paid_at = models.DateTimeField(blank=True, null=True)
    notification_sent_at = models.DateTimeField(blank=True, null=True)
    notification_error = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ('-created_at',)
        verbose_name = 'Transaction'
        verbose_name_plural = 'Transactions'

    def __str__(self):
        return f"Don {self.public_ref} - {self.amount} {self.currency} - {self.status}"

    @property
    def is_paid(self):
        return self.status == self.STATUS_PAID

    def as_status_dict(self):
        """Projection publique utilisée par l'endpoint de vérification."""
        return {
            'sessionId': self.session_id,
            'publicRef': self.public_ref,
            'status': self.status,
            'amount': self.amount,
            'currency': self.currency,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'paidAt': self.paid_at.isoformat() if self.paid_at else None,
        }


class PaymentEvent(models.Model):
    """Journal append-only de chaque appel entrant (webhook) et de chaque vérification."""
    TYPE_WEBHOOK = 'webhook_status'
    TYPE_VERIFY = 'verify'
    TYPE_ERROR = 'error'
    TYPE_CHOICES = [
        (TYPE_WEBHOOK, "Notification P24"),
        (TYPE_VERIFY, "Vérification"),
        (TYPE_ERROR, "Erreur"),
    ]

    event_type = models.CharField(max_length=20, choices=TYPE_CHOICES)
    session_id = models.CharField(max_length=64, blank=True, null=True, db_index=True)
    p24_order_id = models.CharField(max_length=64, blank=True, null=True)
    payload = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ('-created_at', '-id')
        verbose_name = 'Événement paiement'
        verbose_name_plural = 'Événements paiement'

    def __str__(self):
        return f"{self.get_event_type_display()} {self.session_id or '-'}"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValueError("PaymentEvent est en insertion seule")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("PaymentEvent ne peut pas être supprimé")
