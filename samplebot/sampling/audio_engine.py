"""
Audio input source for capture sessions.

This module provides AudioEngine class that handles:
- Input device and channel count lookup
- Callback-driven input streams (sounddevice, ASIO enabled)
- A synthetic noise source for test mode (no hardware)
"""

import os
# Enable ASIO support in sounddevice (must be set before importing sounddevice)
os.environ["SD_ENABLE_ASIO"] = "1"

import logging
import threading
from typing import Callable, Dict, Optional

import numpy as np

DEFAULT_BLOCKSIZE = 4096
DEFAULT_SAMPLERATE = 44100

# Simulated interface noise floor for test mode
TEST_NOISE_DB = -70.0


class AudioEngine:
    """
    Delivers raw input buffers to a callback while running.

    The callback has the sounddevice signature
    callback(indata, frames, time_info, status) and is invoked on the
    audio thread, never on the thread that called start().
    """

    def __init__(self, audio_config: Dict, test_mode: bool = False):
        """
        Initialize the audio engine.

        Args:
            audio_config: Audio configuration dictionary
            test_mode: If True, generate noise instead of opening a device
        """
        self.input_device = audio_config.get('input_device_index')
        self.blocksize = audio_config.get('blocksize') or DEFAULT_BLOCKSIZE
        self.dtype = audio_config.get('dtype', 'float32')
        self.test_channels = audio_config.get('test_channels', 2)
        self.test_samplerate = audio_config.get('test_samplerate', DEFAULT_SAMPLERATE)
        self.test_mode = test_mode

        self._stream = None
        self._test_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._observed_channels: Optional[int] = None

    def _device_info(self) -> Dict:
        import sounddevice as sd

        if self.input_device is not None:
            return sd.query_devices(self.input_device)
        return sd.query_devices(kind='input')

    @property
    def channel_count(self) -> int:
        """Input channel count used to build the next session's channel map."""
        if self._observed_channels is not None:
            return self._observed_channels
        if self.test_mode:
            return self.test_channels
        return int(self._device_info()['max_input_channels'])

    @property
    def samplerate(self) -> int:
        """Native input rate. A different file rate is reached by resampling."""
        if self.test_mode:
            return int(self.test_samplerate)
        return int(self._device_info()['default_samplerate'])

    @property
    def is_running(self) -> bool:
        return self._stream is not None or self._test_thread is not None

    def record_channel_count(self, count: int) -> None:
        """Remember a channel count seen mid-capture for the next session."""
        if count != self._observed_channels:
            logging.info(f"Input channel count changed to {count} - "
                         f"used from the next sample on")
            self._observed_channels = count

    def start(self, callback: Callable, blocksize: Optional[int] = None) -> None:
        """
        Begin delivering buffers to callback.

        Args:
            callback: Called with (indata, frames, time_info, status)
            blocksize: Frames per buffer (None = configured blocksize)
        """
        if self.is_running:
            raise RuntimeError("Audio input is already running")

        blocksize = blocksize or self.blocksize
        channels = self.channel_count
        samplerate = self.samplerate

        if self.test_mode:
            logging.info(f"[TEST MODE] Generating {channels} channels of noise at "
                         f"{samplerate}Hz, blocksize {blocksize}")
            self._stop_event.clear()
            self._test_thread = threading.Thread(
                target=self._generate_noise,
                args=(callback, blocksize, channels, samplerate),
                name='samplebot-test-input',
                daemon=True
            )
            self._test_thread.start()
            return

        import sounddevice as sd

        logging.debug(f"Opening input stream: device={self.input_device}, "
                      f"{channels} channels, {samplerate}Hz, {self.dtype}, "
                      f"blocksize {blocksize}")
        stream = sd.InputStream(
            device=self.input_device,
            channels=channels,
            samplerate=samplerate,
            dtype=self.dtype,
            blocksize=blocksize,
            callback=callback
        )
        try:
            stream.start()
        except Exception:
            stream.close()
            raise
        self._stream = stream

    def stop(self) -> None:
        """
        Stop delivering buffers. Safe to call when already stopped.

        Returns once no callback is running any more.
        """
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
            finally:
                stream.close()
            logging.debug("Input stream closed")

        thread, self._test_thread = self._test_thread, None
        if thread is not None:
            self._stop_event.set()
            if thread is not threading.current_thread():
                thread.join()
            logging.debug("Test input stopped")

    def _generate_noise(self, callback: Callable, blocksize: int,
                        channels: int, samplerate: int) -> None:
        noise_level = 10 ** (TEST_NOISE_DB / 20)
        interval = blocksize / samplerate
        rng = np.random.default_rng()

        while not self._stop_event.is_set():
            block = rng.normal(0, noise_level, (blocksize, channels)).astype(np.float32)
            callback(block, blocksize, None, None)
            self._stop_event.wait(interval)
