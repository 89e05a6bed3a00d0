from django.conf import settings
from rest_framework.permissions import BasePermission


class HasWebhookToken(BasePermission):
    """
    Rider replies arrive from the chat platform, not from a logged-in user.

    When ``DISPATCH_WEBHOOK_TOKEN`` is set the caller must send it in
    ``X-Api-Key``; when it is empty the endpoint is open (local development).
    """
    message = "Invalid or missing API key"

    def has_permission(self, request, view):
        expected = getattr(settings, "DISPATCH_WEBHOOK_TOKEN", "")
        if not expected:
            return True
        return request.headers.get("X-Api-Key") == expected
