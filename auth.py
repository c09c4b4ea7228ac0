"""Request authentication.

A request resolves to a user through a chain of resolvers: the session
cookie first, then the ``X-API-Key`` header. Both produce the same ``User``.
"""
from typing import Optional

from fastapi import Request

from database import RecordStore
from errors import AuthRequired
from models import User

API_KEY_HEADER = "x-api-key"


class SessionResolver:
    """Looks up the login session named by the session cookie."""

    def __init__(self, store: RecordStore, cookie_name: str):
        self.store = store
        self.cookie_name = cookie_name

    def resolve(self, request: Request) -> Optional[User]:
        token = request.cookies.get(self.cookie_name)
        return self.store.get_session_user(token) if token else None


class ApiKeyResolver:
    """Matches the X-API-Key header against stored API keys."""

    def __init__(self, store: RecordStore, header: str = API_KEY_HEADER):
        self.store = store
        self.header = header

    def resolve(self, request: Request) -> Optional[User]:
        key = request.headers.get(self.header)
        return self.store.get_user_by_api_key(key) if key else None


class PrincipalResolver:
    def __init__(self, *strategies):
        self.strategies = strategies

    def resolve(self, request: Request) -> Optional[User]:
        for strategy in self.strategies:
            user = strategy.resolve(request)
            if user is not None:
                return user
        return None


def attach_user(request: Request) -> Optional[User]:
    """Dependency: the requesting user, or None."""
    return request.app.state.resolver.resolve(request)


def require_auth(request: Request) -> User:
    """Dependency: the requesting user; fails with AUTH_REQUIRED."""
    user = attach_user(request)
    if user is None:
        raise AuthRequired()
    return user
