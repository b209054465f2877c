"""
Tests for the playback scheduler.
"""

import asyncio

import numpy as np
import pytest

from voice_relay.audio_playback import PlaybackScheduler, PlaybackState
from voice_relay.audio_utils import AudioFragment
from voice_relay.errors import DeviceError


def fragment(value: float, length: int = 4) -> AudioFragment:
    return AudioFragment(np.full(length, value), 24000)


class ControlledSpeaker:
    """
    Playback device whose fragments finish only when the test says so.

    Records (event, value) pairs so ordering and overlap can be asserted.
    """

    def __init__(self):
        self.events = []
        self.current = None
        self.started = asyncio.Event()
        self.fail_values = set()
        self.closed = False

    async def play(self, fragment):
        value = float(fragment.samples[0])
        self.events.append(("start", value))
        if value in self.fail_values:
            raise DeviceError("output underrun")

        self.current = asyncio.get_running_loop().create_future()
        self.started.set()
        try:
            await self.current
        finally:
            self.events.append(("end", value))
            self.current = None
            self.started.clear()

    async def finish(self):
        """Complete the playing fragment and wait for the next one to start."""
        self.current.set_result(None)
        await asyncio.sleep(0)

    async def close(self):
        self.closed = True


@pytest.fixture
def speaker():
    return ControlledSpeaker()


async def wait_playing(speaker):
    await asyncio.wait_for(speaker.started.wait(), timeout=1.0)


@pytest.mark.asyncio
class TestPlaybackScheduler:
    """Test cases for PlaybackScheduler class."""

    async def test_fragments_play_in_order_without_overlap(self, speaker):
        scheduler = PlaybackScheduler(speaker)
        scheduler.start()
        for value in (0.25, 0.5, 0.75):
            scheduler.enqueue(fragment(value))

        await wait_playing(speaker)
        for previous, following in ((0.25, 0.5), (0.5, 0.75)):
            await speaker.finish()
            # The next fragment starts in the step its predecessor completes
            assert speaker.events[-2:] == [("end", previous), ("start", following)]
        await speaker.finish()
        await asyncio.sleep(0)

        values = [0.25, 0.25, 0.5, 0.5, 0.75, 0.75]
        assert [value for _, value in speaker.events] == values
        assert [event for event, _ in speaker.events] == ["start", "end"] * 3
        await scheduler.close()

    async def test_enqueue_does_not_interrupt_current_fragment(self, speaker):
        scheduler = PlaybackScheduler(speaker)
        scheduler.start()
        scheduler.enqueue(fragment(0.25))
        await wait_playing(speaker)

        scheduler.enqueue(fragment(0.5))
        await asyncio.sleep(0)

        assert speaker.events == [("start", 0.25)]
        assert scheduler.depth == 1
        assert scheduler.is_playing
        await scheduler.close()

    async def test_idle_after_queue_drains(self, speaker):
        scheduler = PlaybackScheduler(speaker)
        scheduler.start()
        assert scheduler.state is PlaybackState.IDLE

        scheduler.enqueue(fragment(0.25))
        await wait_playing(speaker)
        assert scheduler.state is PlaybackState.PLAYING

        await speaker.finish()
        await asyncio.sleep(0)

        assert scheduler.state is PlaybackState.IDLE
        assert scheduler.played == 1
        await scheduler.close()

    async def test_enqueue_after_idle_restarts_playback(self, speaker):
        scheduler = PlaybackScheduler(speaker)
        scheduler.start()
        scheduler.enqueue(fragment(0.25))
        await wait_playing(speaker)
        await speaker.finish()
        await asyncio.sleep(0)

        scheduler.enqueue(fragment(0.5))
        await wait_playing(speaker)

        assert speaker.events[-1] == ("start", 0.5)
        await scheduler.close()

    async def test_bounded_queue_drops_oldest(self, speaker):
        scheduler = PlaybackScheduler(speaker, max_queued=2)
        scheduler.start()
        scheduler.enqueue(fragment(0.25))
        await wait_playing(speaker)

        for value in (0.5, 0.75, 0.125):
            scheduler.enqueue(fragment(value))

        assert scheduler.depth == 2
        assert scheduler.dropped == 1

        for _ in range(3):
            await speaker.finish()
            if scheduler.depth or scheduler.is_playing:
                await wait_playing(speaker)

        started = [value for event, value in speaker.events if event == "start"]
        assert started == [0.25, 0.75, 0.125]
        await scheduler.close()

    async def test_invalid_bound_rejected(self, speaker):
        with pytest.raises(ValueError):
            PlaybackScheduler(speaker, max_queued=0)

    async def test_device_error_skips_fragment(self, speaker):
        speaker.fail_values.add(0.25)
        scheduler = PlaybackScheduler(speaker)
        scheduler.start()
        scheduler.enqueue(fragment(0.25))
        scheduler.enqueue(fragment(0.5))

        await wait_playing(speaker)

        assert scheduler.failed == 1
        assert speaker.events[-1] == ("start", 0.5)
        await scheduler.close()

    async def test_close_abandons_pending_fragments(self, speaker):
        scheduler = PlaybackScheduler(speaker)
        scheduler.start()
        for value in (0.25, 0.5, 0.75):
            scheduler.enqueue(fragment(value))
        await wait_playing(speaker)

        await scheduler.close()

        assert scheduler.depth == 0
        assert scheduler.state is PlaybackState.IDLE
        assert speaker.closed
        assert [value for event, value in speaker.events if event == "start"] == [0.25]
