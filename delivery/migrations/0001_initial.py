import uuid

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="DeliveryTarget",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("operation_date", models.DateField(db_index=True)),
                ("target_concrete_volume", models.FloatField(default=600)),
                ("work_start_hour", models.TimeField()),
                ("work_end_hour", models.TimeField()),
                ("planned_trucks_per_hour", models.PositiveIntegerField(default=12)),
                ("hourly_plan", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-operation_date", "-updated_at", "-created_at"],
            },
        ),
        migrations.CreateModel(
            name="Trip",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("vehicle_id", models.CharField(max_length=50)),
                ("actual_start_at", models.DateTimeField(db_index=True)),
                ("actual_arrival_at", models.DateTimeField(blank=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[("in_progress", "In Progress"), ("completed", "Completed")],
                        db_index=True,
                        default="in_progress",
                        max_length=20,
                    ),
                ),
                ("corrected", models.BooleanField(default=False)),
                (
                    "concrete_plant",
                    models.CharField(
                        choices=[
                            ("Gammon Tuen Mun Plant", "Gammon Tuen Mun Plant"),
                            ("HKC Tsing Yi Plant", "HKC Tsing Yi Plant"),
                        ],
                        default="Gammon Tuen Mun Plant",
                        max_length=50,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["actual_start_at"],
            },
        ),
    ]
