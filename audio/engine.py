# audio/engine.py
import logging
import queue
import threading
from typing import List, Optional

import numpy as np
import sounddevice as sd

from audio.buffer import SampleBuffer
from audio.graph import GraphDevice
from audio.wav import write_wav

logger = logging.getLogger(__name__)


class SoundDevicePlayback(GraphDevice):
    """
    Playback device on a sounddevice OutputStream. The stream callback pulls
    blocks from the voice graphs, so the device clock follows the sound card.
    """

    def __init__(self, sr=44100, blocksize=256, channels=2, pre_gain=1.0,
                 latency='low', record_to: Optional[str] = None):
        super().__init__(sr=sr, channels=channels)
        self.blocksize = int(blocksize)
        self.pre_gain = float(pre_gain)

        # coordinated shutdown
        self._stop_evt = threading.Event()

        # recording
        self._record_path = record_to
        self._rec_queue: "queue.Queue[np.ndarray]" = queue.Queue(maxsize=64)
        self._rec_blocks: List[np.ndarray] = []
        self._rec_run = False
        self._rec_thread: Optional[threading.Thread] = None

        # audio stream
        self.stream = sd.OutputStream(
            channels=self.channels,
            samplerate=self.sr,
            blocksize=self.blocksize,
            callback=self._cb,
            latency=latency,
        )

    ###########################################################################
    ##                              LIFECYCLE                                ##
    ###########################################################################
    def start_stream(self):
        self._stop_evt.clear()
        self.stream.start()
        if self._record_path:
            self._start_recording()
        logger.info(f"[Engine] stream started ({self.sr} Hz, block {self.blocksize}, {self.channels}ch)")

    def stop_stream(self):
        self._stop_evt.set()

        # abort() is immediate; stop() drains
        for action in (self.stream.abort, self.stream.stop, self.stream.close):
            try:
                action()
            except sd.PortAudioError as e:
                logger.debug(f"[Engine] {action.__name__}() during shutdown: {e}")

        if self._record_path:
            self._stop_recording()
        logger.info("[Engine] stream stopped")

    ###########################################################################
    ##                           AUDIO CALL BACK                             ##
    ###########################################################################

    def _cb(self, outdata, frames, time_info, status):
        if status:
            logger.warning(f"[Engine] stream status: {status}")
        # stopping: output silence, no rendering
        if self._stop_evt.is_set():
            outdata.fill(0)
            return

        mix = self.render_block(frames)
        if self.pre_gain != 1.0:
            mix *= self.pre_gain
        np.clip(mix, -1.0, 1.0, out=mix)
        outdata[:] = mix

        if self._record_path and self._rec_run:
            try:
                self._rec_queue.put_nowait(mix.copy())
            except queue.Full:
                # drop; never block audio
                pass

    ###########################################################################
    ##                              RECORDING                                ##
    ###########################################################################

    def _start_recording(self):
        self._rec_blocks = []
        self._rec_run = True
        self._rec_thread = threading.Thread(target=self._rec_collector, name="AudioRecordThread")
        self._rec_thread.start()
        logger.info(f"[REC] Recording to {self._record_path}")

    def _stop_recording(self):
        self._rec_run = False
        if self._rec_thread:
            self._rec_thread.join()
            self._rec_thread = None
        if self._rec_blocks:
            frames = np.concatenate(self._rec_blocks)
            write_wav(self._record_path, SampleBuffer.from_frames(frames, self.sr), bit_depth=16)
        self._rec_blocks = []

    def _rec_collector(self):
        # drain until told to stop AND queue is empty
        while self._rec_run or not self._rec_queue.empty():
            try:
                self._rec_blocks.append(self._rec_queue.get(timeout=0.25))
            except queue.Empty:
                if self._stop_evt.is_set():
                    break
