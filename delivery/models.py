import uuid

from django.db import models


class ConcretePlant(models.TextChoices):
    GAMMON_TUEN_MUN = "Gammon Tuen Mun Plant", "Gammon Tuen Mun Plant"
    HKC_TSING_YI = "HKC Tsing Yi Plant", "HKC Tsing Yi Plant"


class TripStatus(models.TextChoices):
    IN_PROGRESS = "in_progress", "In Progress"
    COMPLETED = "completed", "Completed"


class Trip(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    vehicle_id = models.CharField(max_length=50)
    actual_start_at = models.DateTimeField(db_index=True)
    actual_arrival_at = models.DateTimeField(null=True, blank=True)
    status = models.CharField(
        max_length=20, choices=TripStatus.choices, default=TripStatus.IN_PROGRESS, db_index=True
    )
    corrected = models.BooleanField(default=False)
    concrete_plant = models.CharField(
        max_length=50, choices=ConcretePlant.choices, default=ConcretePlant.GAMMON_TUEN_MUN
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["actual_start_at"]

    def __str__(self):
        return f"{self.vehicle_id} @ {self.actual_start_at:%Y-%m-%d %H:%M}"


class DeliveryTarget(models.Model):
    operation_date = models.DateField(db_index=True)
    target_concrete_volume = models.FloatField(default=600)
    work_start_hour = models.TimeField()
    work_end_hour = models.TimeField()
    planned_trucks_per_hour = models.PositiveIntegerField(default=12)
    # Planned trips per local hour, keyed "7".."23" (hour starting at that time).
    hourly_plan = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-operation_date", "-updated_at", "-created_at"]

    def __str__(self):
        return f"{self.operation_date}: {self.target_concrete_volume} m3"
