from django.urls import path
from .views import list_riders

urlpatterns = [
    path("", list_riders, name="rider-list"),
]
