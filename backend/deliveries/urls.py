from django.urls import path
from . import views

app_name = 'deliveries'

urlpatterns = [
    # Operator APIs
    path('', views.deliveries, name='delivery-list'),
    path('status/', views.delivery_status, name='delivery-status'),
    path('<int:delivery_id>/redispatch/', views.redispatch, name='delivery-redispatch'),
    path('otp/', views.delivery_otp, name='delivery-otp'),

    # Rider replies relayed by the WhatsApp flow
    path('rider/', views.rider_response, name='rider-response'),
]
