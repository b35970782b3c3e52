"""Tests for the change signal debouncer."""

from __future__ import annotations

import asyncio
import threading

import pytest

from profilesync.sync.debounce import ChangeSignalDebouncer


class TestChangeSignalDebouncer:
    """Tests for ChangeSignalDebouncer."""

    @pytest.mark.asyncio
    async def test_burst_fires_once(self) -> None:
        """Should trigger once after a burst, with the last source."""
        fired: list[str] = []
        debouncer = ChangeSignalDebouncer(fired.append, delay=0.05)

        for n in range(5):
            debouncer.notify(f"settings:{n}")
            await asyncio.sleep(0.01)
        assert fired == []
        assert debouncer.pending

        await asyncio.sleep(0.1)
        assert fired == ["settings:4"]
        assert not debouncer.pending
        assert debouncer.last_source == "settings:4"

    @pytest.mark.asyncio
    async def test_separate_bursts_fire_separately(self) -> None:
        """Should trigger again for a change after the quiet period."""
        fired: list[str] = []
        debouncer = ChangeSignalDebouncer(fired.append, delay=0.02)

        debouncer.notify("a")
        await asyncio.sleep(0.06)
        debouncer.notify("b")
        await asyncio.sleep(0.06)

        assert fired == ["a", "b"]

    @pytest.mark.asyncio
    async def test_cancel(self) -> None:
        """Should drop the pending trigger."""
        fired: list[str] = []
        debouncer = ChangeSignalDebouncer(fired.append, delay=0.02)

        debouncer.notify("a")
        debouncer.cancel()
        await asyncio.sleep(0.05)

        assert fired == []
        assert not debouncer.pending

    @pytest.mark.asyncio
    async def test_close_ignores_later_signals(self) -> None:
        """Should ignore notify() after close()."""
        fired: list[str] = []
        debouncer = ChangeSignalDebouncer(fired.append, delay=0.01)

        debouncer.close()
        debouncer.notify("a")
        await asyncio.sleep(0.03)

        assert fired == []

    @pytest.mark.asyncio
    async def test_coroutine_callback_scheduled(self) -> None:
        """Should run a coroutine returned by the callback."""
        done = asyncio.Event()

        async def on_settle(source: str) -> None:
            done.set()

        debouncer = ChangeSignalDebouncer(on_settle, delay=0.01)
        debouncer.notify("a")

        await asyncio.wait_for(done.wait(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_failing_coroutine_does_not_break_debouncer(self) -> None:
        """Should keep working after a triggered sync fails."""
        calls: list[str] = []

        async def on_settle(source: str) -> None:
            calls.append(source)
            raise RuntimeError("sync failed")

        debouncer = ChangeSignalDebouncer(on_settle, delay=0.01)
        debouncer.notify("a")
        await asyncio.sleep(0.05)
        debouncer.notify("b")
        await asyncio.sleep(0.05)

        assert calls == ["a", "b"]

    @pytest.mark.asyncio
    async def test_notify_threadsafe(self) -> None:
        """Should accept signals from another thread."""
        fired: list[str] = []
        debouncer = ChangeSignalDebouncer(fired.append, delay=0.01)
        debouncer.bind(asyncio.get_running_loop())

        thread = threading.Thread(target=debouncer.notify_threadsafe, args=("file:/tmp/x",))
        thread.start()
        thread.join()
        await asyncio.sleep(0.05)

        assert fired == ["file:/tmp/x"]

    def test_notify_threadsafe_unbound(self) -> None:
        """Should raise when no loop is bound."""
        debouncer = ChangeSignalDebouncer(lambda source: None, delay=0.01)
        with pytest.raises(RuntimeError):
            debouncer.notify_threadsafe("a")
