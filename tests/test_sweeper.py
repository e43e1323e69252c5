from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timedelta

from deskbook.config import settings
from deskbook.main import _expiry_sweeper
from deskbook.security import AuthStore

from conftest import TODAY


def _run_for(coro_factory, seconds: float) -> bool:
    """Run the sweeper briefly; report whether it was still alive at the end."""

    async def run() -> bool:
        task = asyncio.create_task(coro_factory())
        await asyncio.sleep(seconds)
        alive = not task.done()
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        return alive

    return asyncio.run(run())


def test_sweeper_keeps_running_after_unexpected_error(service, store, clock, office, monkeypatch, caplog):
    created = service.create_reservation(office["alice"], "d1", TODAY, ["0800-0830"])
    clock.set(9, 0)

    calls = []
    original = store.list_reservations

    def corrupt_once(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise ValueError("corrupt row")
        return original(*args, **kwargs)

    monkeypatch.setattr(store, "list_reservations", corrupt_once)

    with caplog.at_level(logging.ERROR):
        assert _run_for(lambda: _expiry_sweeper(service, 0.01), 0.2)

    assert len(calls) > 1
    assert store.reservations[created.reservation_id].status == "Cancelled"
    assert "Expiry sweep failed" in caplog.text


def test_sweeper_ends_expired_sessions(service, office):
    now = [datetime(2026, 10, 19, 7, 0)]
    ended = []
    auth = AuthStore(allowed_domain="example.com", on_session_end=ended.append, clock=lambda: now[0])
    token = auth.create_session(office["alice"].user_id)
    now[0] += timedelta(hours=settings.session_ttl_hours, minutes=1)

    _run_for(lambda: _expiry_sweeper(service, 0.01, auth), 0.1)

    assert ended == [token]
    assert not auth.is_active(token)
