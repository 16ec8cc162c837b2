"""Tests for the audio playback manager."""

import asyncio

import pytest

from storytime.core.errors import BusyError, PlaybackError
from storytime.processing.playback import AudioPlaybackManager

from conftest import FakeMediaFactory, settle


class RecordingListener:
    def __init__(self):
        self.events = []

    def on_playback_start(self):
        self.events.append("start")

    def on_playback_end(self):
        self.events.append("end")

    def on_playback_error(self, reason):
        self.events.append(("error", reason))


@pytest.fixture
def factory():
    return FakeMediaFactory()


@pytest.fixture
def manager(factory):
    return AudioPlaybackManager(factory, session_id="test")


@pytest.fixture
def listener(manager):
    recorder = RecordingListener()
    manager.subscribe(recorder)
    return recorder


def test_play_starts_and_notifies(manager, factory, listener):
    asyncio.run(manager.play("/audio/1.mp3"))

    assert manager.is_playing
    assert manager.current_url == "/audio/1.mp3"
    assert factory.last.play_calls == 1
    assert listener.events == ["start"]


def test_new_play_discards_previous_session(manager, factory, listener):
    async def scenario():
        await manager.play("/audio/1.mp3")
        factory.last.current_time_ms = 4200.0
        await manager.play("/audio/2.mp3")

    asyncio.run(scenario())

    first, second = factory.created
    assert first.closed
    assert first.pause_calls == 1
    assert first.current_time_ms == 0.0
    assert not second.closed
    assert manager.current_url == "/audio/2.mp3"


def test_empty_url_reports_error(manager, factory, listener):
    with pytest.raises(PlaybackError):
        asyncio.run(manager.play(""))
    assert listener.events == [("error", "No narration audio URL")]
    assert factory.created == []
    assert not manager.is_busy


def test_overlapping_operation_raises_busy(manager, factory, listener):
    async def scenario():
        factory.gate = asyncio.get_running_loop().create_future()
        task = asyncio.ensure_future(manager.play("/audio/1.mp3"))
        await settle()
        assert manager.is_busy

        with pytest.raises(BusyError) as exc:
            manager.pause()
        assert exc.value.in_flight == "play"

        with pytest.raises(BusyError):
            await manager.play("/audio/2.mp3")

        factory.gate.set_result(None)
        await task

    asyncio.run(scenario())
    assert listener.events == ["start"]
    assert len(factory.created) == 1
    assert not manager.is_busy


def test_pause_returns_exact_position(manager, factory):
    async def scenario():
        await manager.play("/audio/1.mp3")
        factory.last.current_time_ms = 2750.0
        return manager.pause()

    assert asyncio.run(scenario()) == 2750.0
    assert not manager.is_playing
    assert manager.has_session


def test_pause_when_nothing_playing_returns_none(manager):
    assert manager.pause() is None
    assert not manager.is_busy


def test_resume_seeks_then_plays(manager, factory, listener):
    async def scenario():
        await manager.play("/audio/1.mp3")
        factory.last.current_time_ms = 1500.0
        position = manager.pause()
        factory.last.current_time_ms = 0.0
        await manager.resume(position)

    asyncio.run(scenario())
    media = factory.last
    assert media.current_time_ms == 1500.0
    assert media.play_calls == 2
    assert manager.is_playing
    assert listener.events == ["start"]


def test_resume_without_session_raises(manager):
    with pytest.raises(PlaybackError):
        asyncio.run(manager.resume(100.0))


def test_natural_end_fires_exactly_once(manager, factory, listener):
    asyncio.run(manager.play("/audio/1.mp3"))
    media = factory.last
    media.finish()
    media.finish()

    assert listener.events == ["start", "end"]
    assert not manager.has_session
    assert media.closed


def test_media_error_discards_and_notifies(manager, factory, listener):
    asyncio.run(manager.play("/audio/1.mp3"))
    media = factory.last
    media.error("decode failed")

    assert listener.events == ["start", ("error", "decode failed")]
    assert not manager.has_session
    assert media.closed

    # No end after error
    media.finish()
    assert listener.events[-1] == ("error", "decode failed")


def test_play_failure_reports_error_and_raises(manager, factory, listener):
    factory.fail_with = RuntimeError("autoplay blocked")
    with pytest.raises(PlaybackError):
        asyncio.run(manager.play("/audio/1.mp3"))

    assert listener.events == [("error", "Playback failed: autoplay blocked")]
    assert not manager.has_session
    assert factory.last.closed
    assert not manager.is_busy


def test_stop_discards_without_notification(manager, factory, listener):
    asyncio.run(manager.play("/audio/1.mp3"))
    manager.stop()
    assert not manager.has_session
    assert factory.last.closed
    assert listener.events == ["start"]


def test_release_during_inflight_play_supersedes_it(manager, factory, listener):
    async def scenario():
        factory.gate = asyncio.get_running_loop().create_future()
        task = asyncio.ensure_future(manager.play("/audio/1.mp3"))
        await settle()

        manager.release()
        assert not manager.is_busy
        assert not manager.has_session

        factory.gate.set_result(None)
        await task

    asyncio.run(scenario())
    assert listener.events == []
    assert factory.last.closed
    assert not manager.is_playing


def test_listener_error_is_isolated(manager, factory):
    seen = []

    class Broken:
        def on_playback_start(self):
            raise RuntimeError("boom")

    class Good:
        def on_playback_start(self):
            seen.append("start")

    manager.subscribe(Broken())
    manager.subscribe(Good())
    asyncio.run(manager.play("/audio/1.mp3"))
    assert seen == ["start"]


def test_discard_survives_failing_cleanup(manager, factory, listener):
    asyncio.run(manager.play("/audio/1.mp3"))
    media = factory.last

    def broken_pause():
        raise RuntimeError("element gone")

    media.pause = broken_pause
    manager.release()

    assert media.closed
    assert media.current_time_ms == 0.0
