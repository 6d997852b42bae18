"""
Evaluation context construction.

Host applications tell the SDK who the current user is and which locale is
active through resolver strategies chosen at construction time, instead of
having the SDK reach into framework globals.
"""

import contextvars
import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Mapping, Optional, Protocol, runtime_checkable

from togglebox.models import ANONYMOUS_USER_ID, EvaluationContext

logger = logging.getLogger("togglebox")


def normalize_language(locale: Optional[str]) -> Optional[str]:
    """
    Reduce a locale such as ``en_US`` or ``en-US`` to its first two characters.

    ``"zh-Hant"`` becomes ``"zh"``. Three-letter codes are truncated as well.
    """
    if locale is None:
        return None
    if len(locale) > 2:
        return locale[:2]
    return locale


@runtime_checkable
class UserResolver(Protocol):
    """Supplies the current user id, or None when nobody is identified."""

    def resolve_user_id(self) -> Optional[str]:
        ...


@runtime_checkable
class LocaleResolver(Protocol):
    """Supplies the current locale string, e.g. ``en_US``."""

    def resolve_locale(self) -> Optional[str]:
        ...


class AnonymousUserResolver:
    """Always anonymous."""

    def resolve_user_id(self) -> Optional[str]:
        return None


class CallableUserResolver:
    """Custom strategy: any zero-argument callable returning an id."""

    def __init__(self, fn: Callable[[], Any]):
        self._fn = fn

    def resolve_user_id(self) -> Optional[str]:
        value = self._fn()
        return None if value is None else str(value)


_current_user: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "togglebox_user_id", default=None
)
_current_locale: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "togglebox_locale", default=None
)


@contextmanager
def bind_request(user_id: Any = None, locale: Optional[str] = None) -> Iterator[None]:
    """
    Bind the identity and locale of the current request.

    Intended for host middleware; concurrent requests in separate tasks or
    threads each see their own values.

    Example:
        ```python
        with bind_request(user_id=request.user.id, locale=request.headers.get("Accept-Language")):
            return await call_next(request)
        ```
    """
    user_token = _current_user.set(None if user_id is None else str(user_id))
    locale_token = _current_locale.set(locale)
    try:
        yield
    finally:
        _current_user.reset(user_token)
        _current_locale.reset(locale_token)


class RequestUserResolver:
    """Reads the user id bound with ``bind_request`` (authenticated user or session id)."""

    def resolve_user_id(self) -> Optional[str]:
        return _current_user.get()


class RequestLocaleResolver:
    """Reads the locale bound with ``bind_request``."""

    def resolve_locale(self) -> Optional[str]:
        return _current_locale.get()


class StaticLocaleResolver:
    """A fixed locale, for single-language deployments."""

    def __init__(self, locale: Optional[str]):
        self._locale = locale

    def resolve_locale(self) -> Optional[str]:
        return self._locale


class ContextBuilder:
    """Builds ``EvaluationContext`` objects, filling gaps from the resolvers."""

    def __init__(
        self,
        user_resolver: Optional[UserResolver] = None,
        locale_resolver: Optional[LocaleResolver] = None,
    ):
        self._user_resolver = user_resolver or RequestUserResolver()
        self._locale_resolver = locale_resolver or RequestLocaleResolver()

    def build(
        self,
        user_id: Optional[str] = None,
        country: Optional[str] = None,
        language: Optional[str] = None,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> EvaluationContext:
        if user_id is None:
            user_id = self._resolve_user_id()
        if language is None:
            language = self._resolve_locale()

        return EvaluationContext(
            user_id=user_id or ANONYMOUS_USER_ID,
            country=country,
            language=normalize_language(language),
            attributes=dict(attributes or {}),
        )

    def _resolve_user_id(self) -> Optional[str]:
        try:
            return self._user_resolver.resolve_user_id()
        except Exception as e:
            logger.warning(f"User resolver failed, evaluating as anonymous: {e}")
            return None

    def _resolve_locale(self) -> Optional[str]:
        try:
            return self._locale_resolver.resolve_locale()
        except Exception as e:
            logger.warning(f"Locale resolver failed: {e}")
            return None
