# Generated migration for the clinic queue

from django.db import migrations, models
import django.db.models.deletion
from django.utils import timezone


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('appointments', '0001_initial'),
    ]

    operations = [
        migrations.CreateModel(
            name='QueueEntry',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('IN_QUEUE', 'In queue'), ('CALLED', 'Called'), ('DONE', 'Done'), ('MISSED', 'Missed')], default='IN_QUEUE', max_length=10)),
                ('priority', models.PositiveSmallIntegerField(choices=[(1, 'Normal'), (2, 'Elderly'), (3, 'Emergency')], default=1)),
                ('created_at', models.DateTimeField(default=timezone.now)),
                ('called_at', models.DateTimeField(blank=True, null=True)),
                ('three_away_notified_at', models.DateTimeField(blank=True, null=True)),
                ('appointment', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='queue_entries', to='appointments.appointment')),
                ('clinic', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='queue_entries', to='appointments.clinic')),
            ],
            options={
                'db_table': 'queue_entries',
                'ordering': ['-priority', 'created_at', 'id'],
                'verbose_name_plural': 'Queue entries',
                'indexes': [
                    models.Index(fields=['clinic', 'status'], name='queue_entry_clinic_status_idx'),
                    models.Index(fields=['appointment', 'status'], name='queue_entry_appt_status_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('status__in', ['IN_QUEUE', 'CALLED'])), fields=('appointment',), name='unique_active_queue_entry_per_appointment'),
                ],
            },
        ),
    ]
