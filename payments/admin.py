import csv
from datetime import datetime

from django.contrib import admin
from django.http import HttpResponse

from .models import PaymentEvent, Transaction


@admin.register(Transaction)
class TransactionAdmin(admin.ModelAdmin):
    list_display = ('public_ref', 'amount_display', 'currency', 'status', 'email', 'created_at', 'paid_at')
    list_filter = ('status', 'currency', 'created_at')
    search_fields = ('public_ref', 'session_id', 'email', 'p24_order_id')
    date_hierarchy = 'created_at'
    actions = ['exporter_transactions_csv']

    # Les transitions passent uniquement par le flux P24
    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def amount_display(self, obj):
        return f"{obj.amount / 100:.2f}"
    amount_display.short_description = "Montant"

    def exporter_transactions_csv(self, request, queryset):
        """Action admin: export des transactions sélectionnées en CSV."""
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        response = HttpResponse(content_type='text/csv; charset=utf-8')
        response['Content-Disposition'] = f'attachment; filename="transactions_{timestamp}.csv"'
        writer = csv.writer(response, delimiter=';')
        writer.writerow([
            'Référence', 'Session', 'Montant', 'Devise', 'Statut', 'Email', 'Commande P24', 'Créée le', 'Payée le'
        ])
        for tx in queryset:
            writer.writerow([
                tx.public_ref,
                tx.session_id,
                f"{tx.amount / 100:.2f}",
                tx.currency,
                tx.get_status_display(),
                tx.email or '',
                tx.p24_order_id or '',
                tx.created_at.strftime('%Y-%m-%d %H:%M:%S'),
                tx.paid_at.strftime('%Y-%m-%d %H:%M:%S') if tx.paid_at else '',
            ])
        return response
    exporter_transactions_csv.short_description = 'Exporter en CSV les transactions sélectionnées'


@admin.register(PaymentEvent)
class PaymentEventAdmin(admin.ModelAdmin):
    list_display = ('event_type', 'session_id', 'p24_order_id', 'created_at')
    list_filter = ('event_type', 'created_at')
    search_fields = ('session_id', 'p24_order_id')

    def get_readonly_fields(self, request, obj=None):
        return [f.name for f in self.model._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
