from django.db import migrations, models
import django.utils.timezone


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='CacheEntry',
            fields=[
                ('cache_key', models.CharField(max_length=100, primary_key=True, serialize=False)),
                ('data', models.JSONField(default=dict)),
                ('cached_at', models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                'verbose_name': 'Entrée de cache',
                'verbose_name_plural': 'Entrées de cache',
            },
        ),
    ]
