from datetime import datetime, timedelta, timezone
import string

import pytest

from stampline_api.services.loyalty.tokens import (
    CounterTokenState,
    constant_time_equals,
    generate_counter_token,
    generate_public_id,
    generate_short_code,
    is_token_valid,
)


ROTATED_AT = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
GRACE = timedelta(minutes=30)


def test_short_codes_use_alphanumeric_alphabet() -> None:
    code = generate_short_code(64)
    assert len(code) == 64
    assert set(code) <= set(string.ascii_letters + string.digits)
    assert len(generate_public_id()) == 10
    assert len(generate_counter_token()) == 32


def test_short_code_requires_positive_length() -> None:
    with pytest.raises(ValueError):
        generate_short_code(0)


def test_previous_token_accepted_inside_grace_window_only() -> None:
    state = CounterTokenState(current="old-token").rotate(now=ROTATED_AT, new_token="new-token")

    assert state.previous == "old-token"
    assert state.is_valid("new-token", now=ROTATED_AT + timedelta(days=3), grace_window=GRACE)
    assert state.is_valid("old-token", now=ROTATED_AT + timedelta(minutes=29), grace_window=GRACE)
    assert state.is_valid("old-token", now=ROTATED_AT + GRACE, grace_window=GRACE)
    assert not state.is_valid("old-token", now=ROTATED_AT + timedelta(minutes=31), grace_window=GRACE)
    assert state.grace_ends_at(GRACE) == ROTATED_AT + GRACE


def test_second_rotation_drops_the_oldest_token() -> None:
    state = (
        CounterTokenState(current="first")
        .rotate(now=ROTATED_AT, new_token="second")
        .rotate(now=ROTATED_AT + timedelta(minutes=5), new_token="third")
    )

    now = ROTATED_AT + timedelta(minutes=6)
    assert state.is_valid("third", now=now, grace_window=GRACE)
    assert state.is_valid("second", now=now, grace_window=GRACE)
    assert not state.is_valid("first", now=now, grace_window=GRACE)


def test_rotation_must_change_the_token() -> None:
    with pytest.raises(ValueError):
        CounterTokenState(current="same").rotate(now=ROTATED_AT, new_token="same")


def test_rotation_generates_fresh_token_by_default() -> None:
    state = CounterTokenState(current="seed").rotate(now=ROTATED_AT)
    assert state.current != "seed"
    assert len(state.current) == 32


@pytest.mark.parametrize("provided", [None, "", "nope"])
def test_missing_or_unknown_tokens_are_rejected(provided) -> None:
    assert not is_token_valid(
        current="current",
        previous="previous",
        rotated_at=ROTATED_AT,
        provided=provided,
        now=ROTATED_AT,
        grace_window=GRACE,
    )


def test_naive_rotation_timestamp_is_treated_as_utc() -> None:
    assert is_token_valid(
        current="current",
        previous="previous",
        rotated_at=ROTATED_AT.replace(tzinfo=None),
        provided="previous",
        now=ROTATED_AT + timedelta(minutes=10),
        grace_window=GRACE,
    )


def test_constant_time_equals_handles_non_ascii_input() -> None:
    assert constant_time_equals("café", "café")
    assert not constant_time_equals("token", "tökén")
