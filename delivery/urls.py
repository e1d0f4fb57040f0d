from django.urls import path
from .views import (
    DeliveryRecordListView, DeliveryResetView, DeliveryStartView, DeliveryStatusView,
    DeliveryStopView, RouteTrackingView, SimpleStatusView, TodayTripsView,
    TrafficDataAPIView, TripArriveView, TripStartView, TruckListView,
)

app_name = "delivery"

urlpatterns = [
    path("api/delivery/start/", DeliveryStartView.as_view(), name="delivery-start"),
    path("api/delivery/stop/", DeliveryStopView.as_view(), name="delivery-stop"),
    path("api/delivery/reset/", DeliveryResetView.as_view(), name="delivery-reset"),
    path("api/delivery/status/", DeliveryStatusView.as_view(), name="delivery-status"),
    path("api/delivery/records/", DeliveryRecordListView.as_view(), name="delivery-records"),
    path("api/delivery/simple-status/", SimpleStatusView.as_view(), name="simple-status"),
    path("api/trucks/", TruckListView.as_view(), name="trucks"),
    path("api/traffic/", TrafficDataAPIView.as_view(), name="traffic-data"),
    path("api/tracking/<int:route_id>/", RouteTrackingView.as_view(), name="route-tracking"),
    path("api/trips/start/", TripStartView.as_view(), name="trip-start"),
    path("api/trips/<uuid:trip_id>/arrive/", TripArriveView.as_view(), name="trip-arrive"),
    path("api/trips/today/", TodayTripsView.as_view(), name="trips-today"),
]
