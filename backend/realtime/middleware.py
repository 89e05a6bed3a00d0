"""WebSocket authentication: JWT in the query string, session cookie otherwise."""

import logging
from urllib.parse import parse_qs

from asgiref.sync import sync_to_async
from channels.auth import AuthMiddlewareStack
from channels.middleware import BaseMiddleware
from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import AccessToken

logger = logging.getLogger(__name__)


@sync_to_async
def _user_for_token(raw_token: str):
    access = AccessToken(raw_token)
    User = get_user_model()
    return User.objects.filter(id=access["user_id"], is_active=True).first() or AnonymousUser()


class QueryStringJWTMiddleware(BaseMiddleware):
    """
    Authenticate from ``?token=<access jwt>`` when present.

    Without a token the user already placed in the scope by the session
    middleware is kept, so browser dashboards work on cookies alone.
    """

    async def __call__(self, scope, receive, send):
        params = parse_qs(scope.get("query_string", b"").decode())
        token_list = params.get("token")
        if token_list:
            scope = dict(scope)
            try:
                scope["user"] = await _user_for_token(token_list[0])
            except (TokenError, KeyError) as exc:
                logger.debug("JWT auth failed: %s", exc)
                scope["user"] = AnonymousUser()
        return await super().__call__(scope, receive, send)


def OpsAuthMiddlewareStack(inner):
    return AuthMiddlewareStack(QueryStringJWTMiddleware(inner))
