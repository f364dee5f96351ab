"""Authentication state source consumed by ``UserSession``."""

from __future__ import annotations

import abc
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

LOGGER = logging.getLogger(__name__)

AuthListener = Callable[[Optional[str]], Union[None, Awaitable[None]]]


class AuthProvider(abc.ABC):
    @property
    @abc.abstractmethod
    def current_user_id(self) -> Optional[str]:
        ...

    @abc.abstractmethod
    def add_listener(self, listener: AuthListener) -> Callable[[], None]:
        """Register for sign-in / sign-out notifications; returns an unsubscribe callable."""

    @abc.abstractmethod
    async def sign_out(self) -> None:
        ...


class StaticAuthProvider(AuthProvider):
    """In-process auth state with explicit ``sign_in`` / ``sign_out``."""

    def __init__(self, user_id: Optional[str] = None) -> None:
        self._user_id = user_id
        self._listeners: List[AuthListener] = []

    @property
    def current_user_id(self) -> Optional[str]:
        return self._user_id

    def add_listener(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def _notify(self) -> None:
        for listener in list(self._listeners):
            result: Any = listener(self._user_id)
            if inspect.isawaitable(result):
                await result

    async def sign_in(self, user_id: str) -> None:
        self._user_id = user_id
        await self._notify()

    async def sign_out(self) -> None:
        if self._user_id is None:
            return
        LOGGER.info("Signing out user %s", self._user_id)
        self._user_id = None
        await self._notify()


__all__ = ["AuthListener", "AuthProvider", "StaticAuthProvider"]
