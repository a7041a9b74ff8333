from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Transaction',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('session_id', models.CharField(max_length=64, unique=True)),
                ('public_ref', models.CharField(db_index=True, max_length=32)),
                ('amount', models.PositiveIntegerField(help_text='Montant en plus petite unité (grosze)')),
                ('currency', models.CharField(default='PLN', max_length=8)),
                ('email', models.EmailField(blank=True, max_length=254, null=True)),
                ('consents', models.JSONField(blank=True, default=dict)),
                ('consents_version', models.CharField(blank=True, max_length=16)),
                ('meta', models.JSONField(blank=True, null=True)),
                ('status', models.CharField(choices=[('created', 'Créée'), ('registered', 'Enregistrée chez P24'), ('paid', 'Payée')], default='created', max_length=12)),
                ('p24_order_id', models.CharField(blank=True, max_length=64, null=True)),
                ('p24_token', models.CharField(blank=True, max_length=128, null=True)),
                ('redirect_url', models.URLField(blank=True, max_length=300, null=True)),
                ('register_payload', models.JSONField(blank=True, null=True)),
                ('verify_payload', models.JSONField(blank=True, null=True)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('notification_sent_at', models.DateTimeField(blank=True, null=True)),
                ('notification_error', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Transaction',
                'verbose_name_plural': 'Transactions',
                'ordering': ('-created_at',),
            },
        ),
        migrations.CreateModel(
            name='PaymentEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('event_type', models.CharField(choices=[('webhook_status', 'Notification P24'), ('verify', 'Vérification'), ('error', 'Erreur')], max_length=20)),
                ('session_id', models.CharField(blank=True, db_index=True, max_length=64, null=True)),
                ('p24_order_id', models.CharField(blank=True, max_length=64, null=True)),
                ('payload', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'verbose_name': 'Événement paiement',
                'verbose_name_plural': 'Événements paiement',
                'ordering': ('-created_at', '-id'),
            },
        ),
    ]
