from django import forms
from django.conf import settings

from .models import ConcretePlant, Trip


class TripStartForm(forms.ModelForm):
    concrete_plant = forms.CharField(required=False)

    class Meta:
        model = Trip
        fields = ("vehicle_id", "actual_start_at", "corrected")

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fields["actual_start_at"].required = False

    def clean_concrete_plant(self):
        # Unknown plants are booked against the Tuen Mun plant.
        plant = self.cleaned_data.get("concrete_plant")
        if plant in ConcretePlant.values:
            return plant
        return ConcretePlant.GAMMON_TUEN_MUN


class TripArriveForm(forms.Form):
    actual_arrival_at = forms.DateTimeField(required=False)
    corrected = forms.NullBooleanField(required=False)


class TripFilterForm(forms.Form):
    date = forms.DateField(required=False)
    hour_from = forms.IntegerField(required=False, min_value=0, max_value=23)
    hour_to = forms.IntegerField(required=False, min_value=1, max_value=24)


class DeliveryStartForm(forms.Form):
    target_volume = forms.FloatField(required=False, min_value=0)
    volume_per_truck = forms.FloatField(required=False)
    trucks_per_hour = forms.FloatField(required=False)
    default_speed = forms.FloatField(required=False)
    start_time = forms.DateTimeField(required=False)
    path_id = forms.CharField(required=False)
    auto_dispatch = forms.NullBooleanField(required=False)

    def clean(self):
        cleaned = super().clean()
        defaults = settings.DELIVERY_CONFIG
        fallbacks = {
            "target_volume": defaults["default_target_volume"],
            "volume_per_truck": defaults["default_volume_per_truck"],
            "trucks_per_hour": defaults["default_trucks_per_hour"],
            "default_speed": defaults["default_speed_kmh"],
            "path_id": defaults["primary_path"],
            "auto_dispatch": defaults["auto_dispatch"],
        }
        for name, fallback in fallbacks.items():
            if cleaned.get(name) in (None, ""):
                cleaned[name] = fallback

        for name in ("volume_per_truck", "trucks_per_hour", "default_speed"):
            value = cleaned.get(name)
            if value is not None and value <= 0:
                self.add_error(name, "Must be greater than zero.")
        return cleaned
