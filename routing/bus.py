import logging
import queue
from typing import List, Union
from midi.messages import NoteOn, NoteOff, CC
from sampler.voice import VoiceStarted, VoiceReleased, VoiceFinished

logger = logging.getLogger(__name__)

# MIDI input on the way in, voice lifecycle notifications on the way out
Event = Union[NoteOn, NoteOff, CC, VoiceStarted, VoiceReleased, VoiceFinished]


class EventBus:
    """Thread-safe FIFO between the MIDI/clock threads and the control loop."""

    def __init__(self, maxsize=1024) -> None:
        self.q = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def post(self, e: Event) -> None:
        """Raises queue.Full when nobody drains the bus."""
        self.q.put_nowait(e)

    def offer(self, e: Event) -> bool:
        """Like post, but drops the event when the bus is full."""
        try:
            self.q.put_nowait(e)
            return True
        except queue.Full:
            self.dropped += 1
            logger.debug(f"[Bus] full, dropped {type(e).__name__} ({self.dropped} so far)")
            return False

    def drain(self, max_events=128) -> List[Event]:
        evs = []
        try:
            while len(evs) < max_events:
                evs.append(self.q.get_nowait())
        except queue.Empty:
            pass
        return evs
