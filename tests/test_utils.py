import asyncio
from datetime import datetime, timezone

from feed_notifier.utils import (
    PassMemo,
    parse_bool,
    parse_delay_setting,
    parse_timestamp,
    snowflake_key,
)


def test_parse_delay_setting_ms_backwards_compatibility() -> None:
    assert parse_delay_setting("250", 0.0) == 0.25


def test_parse_delay_setting_seconds_float() -> None:
    assert parse_delay_setting("1.50", 0.0) == 1.5


def test_parse_delay_setting_invalid_returns_default() -> None:
    assert parse_delay_setting("not-a-number", 2.0) == 2.0


def test_parse_bool_supports_truthy_and_falsy() -> None:
    assert parse_bool("on") is True
    assert parse_bool("NO") is False
    assert parse_bool(None, default=True) is True
    assert parse_bool("unexpected", default=False) is False


def test_parse_timestamp_handles_zulu_and_naive() -> None:
    expected = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert parse_timestamp("2024-05-01T12:00:00Z") == expected
    assert parse_timestamp("2024-05-01T12:00:00") == expected
    assert parse_timestamp("") is None
    assert parse_timestamp("yesterday") is None


def test_snowflake_key_orders_numerically() -> None:
    assert snowflake_key("1000") > snowflake_key("999")
    assert snowflake_key(None) == 0
    assert snowflake_key("abc") == 0


def test_pass_memo_shares_concurrent_lookups() -> None:
    memo = PassMemo()
    calls: list[str] = []

    async def fetch() -> str:
        calls.append("fetch")
        await asyncio.sleep(0.01)
        return "value"

    async def runner() -> list[str]:
        return list(await asyncio.gather(*(memo.get("key", fetch) for _ in range(5))))

    assert asyncio.run(runner()) == ["value"] * 5
    assert calls == ["fetch"]
    memo.forget("key")
    assert memo.peek("key") is None
