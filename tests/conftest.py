"""Shared fixtures and doubles for the narration core tests."""

import asyncio
from dataclasses import replace
from typing import List, Optional

import pytest

from storytime.core.config import WorkflowConfig
from storytime.core.models import NavigationResult, PageRef
from storytime.core.state_machine import WorkflowStateMachine
from storytime.processing.playback import AudioPlaybackManager
from storytime.processing.timers import TimerEngine


# --- Clock ---

class FakeHandle:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Virtual clock with the `call_later` shape of an asyncio loop. Time in ms."""

    def __init__(self):
        self.now = 0.0
        self._handles: List[FakeHandle] = []

    def call_later(self, delay, callback, *args):
        handle = FakeHandle(self.now + delay * 1000.0, callback, args)
        self._handles.append(handle)
        return handle

    @property
    def pending(self):
        return [h for h in self._handles if not h.cancelled]

    def advance(self, ms):
        target = self.now + ms
        while True:
            due = [h for h in self.pending if h.when <= target + 1e-9]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self._handles.remove(handle)
            self.now = handle.when
            handle.callback(*handle.args)
        self.now = target


# --- Media ---

class FakeMedia:
    """MediaElement double. `play()` can be made to fail or to block."""

    def __init__(self, url, on_ended, on_error, fail_with=None, gate=None):
        self.url = url
        self.on_ended = on_ended
        self.on_error = on_error
        self.fail_with = fail_with
        self.gate = gate
        self.current_time_ms = 0.0
        self.playing = False
        self.closed = False
        self.play_calls = 0
        self.pause_calls = 0
        self.seeks = []

    async def play(self):
        self.play_calls += 1
        if self.gate is not None:
            await self.gate
        if self.fail_with is not None:
            raise self.fail_with
        self.playing = True

    def pause(self):
        self.pause_calls += 1
        self.playing = False

    def close(self):
        self.closed = True

    def finish(self):
        self.on_ended()

    def error(self, reason):
        self.on_error(reason)


class FakeMediaFactory:
    def __init__(self):
        self.created: List[FakeMedia] = []
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[asyncio.Future] = None

    def __call__(self, url, on_ended, on_error):
        media = FakeMedia(url, on_ended, on_error, fail_with=self.fail_with, gate=self.gate)
        self.created.append(media)
        return media

    @property
    def last(self) -> FakeMedia:
        return self.created[-1]


# --- Book ---

def make_pages(count, book="book"):
    return [
        PageRef(page_id=f"{book}-{i}", index=i, total=count, audio_url=f"/audio/{book}/{i}.mp3")
        for i in range(1, count + 1)
    ]


class StubNavigator:
    """NavigationProvider double walking a page list; can be told to fail."""

    def __init__(self, pages, position=0):
        self.pages = pages
        self.position = position
        self.fail_with: Optional[Exception] = None
        self.next_calls = 0
        self.previous_calls = 0

    async def next(self):
        self.next_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        if self.position + 1 >= len(self.pages):
            return None
        self.position += 1
        page = self.pages[self.position]
        return NavigationResult(page=page, is_last_page=page.is_last)

    async def previous(self):
        self.previous_calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        if self.position == 0:
            return None
        self.position -= 1
        page = self.pages[self.position]
        return NavigationResult(page=page, is_last_page=page.is_last)


class StubNarration:
    def __init__(self):
        self.resolved = []
        self.fail_with: Optional[Exception] = None

    async def resolve(self, page):
        self.resolved.append(page)
        if self.fail_with is not None:
            raise self.fail_with
        return page.audio_url


async def settle(rounds=10):
    """Let spawned tasks run to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# --- Rig ---

class WorkflowRig:
    """A machine wired to fakes, recording every published notification."""

    def __init__(self, config: Optional[WorkflowConfig] = None, page_count=3):
        self.config = config or WorkflowConfig(
            pre_roll_ms=1000, silence_window_ms=3000, tick_ms=100,
            waiting_interrupt_policy="reset",
        )
        self.scheduler = FakeScheduler()
        self.media = FakeMediaFactory()
        self.pages = make_pages(page_count)
        self.navigator = StubNavigator(self.pages)
        self.narration = StubNarration()
        self.timers = TimerEngine(tick_ms=self.config.tick_ms, scheduler=self.scheduler)
        self.playback = AudioPlaybackManager(self.media)
        self.machine = WorkflowStateMachine(
            timers=self.timers,
            playback=self.playback,
            navigator=self.navigator,
            narration=self.narration,
            config=self.config,
        )
        self.notifications = []
        self.machine.subscribe(lambda state, ctx: self.notifications.append((state, ctx)))

    def open_page(self, number=1):
        self.navigator.position = number - 1
        page = self.pages[number - 1]
        self.machine.set_current_page(page)
        self.notifications.clear()
        return page

    @property
    def states(self):
        return [state for state, _ in self.notifications]


@pytest.fixture
def rig():
    return WorkflowRig()


@pytest.fixture
def rig_factory():
    def factory(page_count=3, **overrides):
        base = WorkflowConfig(
            pre_roll_ms=1000, silence_window_ms=3000, tick_ms=100,
            waiting_interrupt_policy="reset",
        )
        return WorkflowRig(config=replace(base, **overrides), page_count=page_count)
    return factory


@pytest.fixture
def scheduler():
    return FakeScheduler()
