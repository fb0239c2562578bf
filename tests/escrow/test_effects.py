"""Tests for best-effort side effects."""

import pytest

from sobek.escrow.effects import best_effort


async def returns(value):
    return value


async def raises(exc):
    raise exc


@pytest.mark.asyncio
async def test_success_captures_value():
    outcome = await best_effort("notify", returns("msg-1"))
    assert (outcome.ok, outcome.value, outcome.error) == (True, "msg-1", None)


@pytest.mark.asyncio
async def test_false_counts_as_refused():
    outcome = await best_effort("cancel_timer", returns(False))
    assert not outcome.ok
    assert outcome.error == "refused"


@pytest.mark.asyncio
async def test_exception_is_captured():
    outcome = await best_effort("notify", raises(RuntimeError("bot blocked")))
    assert not outcome.ok
    assert outcome.error == "bot blocked"


@pytest.mark.asyncio
async def test_exception_without_message_uses_type_name():
    outcome = await best_effort("notify", raises(KeyError()))
    assert outcome.error == "KeyError"
