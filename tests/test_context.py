"""Tests for evaluation context construction."""

import asyncio

import pytest

from togglebox.context import (
    AnonymousUserResolver,
    CallableUserResolver,
    ContextBuilder,
    StaticLocaleResolver,
    bind_request,
    normalize_language,
)
from togglebox.models import ANONYMOUS_USER_ID


@pytest.mark.parametrize(
    "locale,expected",
    [
        ("en_US", "en"),
        ("en-GB", "en"),
        ("zh-Hant", "zh"),
        ("deu", "de"),
        ("fr", "fr"),
        ("", ""),
        (None, None),
    ],
)
def test_normalize_language(locale, expected):
    assert normalize_language(locale) == expected


class TestContextBuilder:
    """Tests for ContextBuilder."""

    def test_defaults_to_anonymous(self):
        ctx = ContextBuilder().build()
        assert ctx.user_id == ANONYMOUS_USER_ID
        assert ctx.language is None

    def test_explicit_values_win(self):
        builder = ContextBuilder(CallableUserResolver(lambda: "resolved"), StaticLocaleResolver("it"))
        ctx = builder.build(user_id="explicit", language="pt_BR", country="BR")

        assert ctx.user_id == "explicit"
        assert ctx.language == "pt"
        assert ctx.country == "BR"

    def test_callable_resolver(self):
        builder = ContextBuilder(CallableUserResolver(lambda: 42), StaticLocaleResolver("en_US"))
        ctx = builder.build()

        assert ctx.user_id == "42"
        assert ctx.language == "en"

    def test_anonymous_resolver(self):
        ctx = ContextBuilder(AnonymousUserResolver()).build()
        assert ctx.user_id == ANONYMOUS_USER_ID

    def test_failing_resolver_falls_back_to_anonymous(self, caplog):
        def broken():
            raise RuntimeError("no session")

        ctx = ContextBuilder(CallableUserResolver(broken)).build()

        assert ctx.user_id == ANONYMOUS_USER_ID
        assert "User resolver failed" in caplog.text

    def test_attributes_are_copied(self):
        attributes = {"plan": "pro"}
        ctx = ContextBuilder().build(attributes=attributes)
        attributes["plan"] = "free"
        assert ctx.attributes["plan"] == "pro"


class TestBindRequest:
    """Tests for request-scoped identity."""

    def test_bound_values_used_and_reset(self):
        builder = ContextBuilder()

        with bind_request(user_id=7, locale="de_DE"):
            ctx = builder.build()
            assert ctx.user_id == "7"
            assert ctx.language == "de"

        assert builder.build().user_id == ANONYMOUS_USER_ID

    async def test_concurrent_requests_are_isolated(self):
        builder = ContextBuilder()

        async def handle(user_id):
            with bind_request(user_id=user_id):
                await asyncio.sleep(0.01)
                return builder.build().user_id

        results = await asyncio.gather(*(handle(f"user-{i}") for i in range(10)))

        assert results == [f"user-{i}" for i in range(10)]
