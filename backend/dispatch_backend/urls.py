from django.contrib import admin
from django.urls import path, include
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check), # Health check endpoint

    # Operator authentication (JWT)
    path('api/auth/token/', TokenObtainPairView.as_view(), name='token-obtain'),
    path('api/auth/token/refresh/', TokenRefreshView.as_view(), name='token-refresh'),

    # Candidate riders (at /api/riders/)
    path('api/riders/', include('riders.urls')),

    # Deliveries, dispatch control and rider replies (at /api/deliveries/)
    path('api/deliveries/', include('deliveries.urls')),
]
