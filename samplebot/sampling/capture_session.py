"""
Recording of a single sample to disk.

A CaptureSession owns one open WAV file and the live input callback for
exactly one note. Buffers arrive on the audio thread, go through the
channel conversion pipeline and are appended to the file.
"""

import logging
from pathlib import Path
from typing import NamedTuple, Optional, Tuple

import soundfile as sf

from samplebot.errors import CaptureStartError, ConversionError
from samplebot.sampling.channel_pipeline import (
    MONO, SILENCE_DB, ChannelConversionPipeline, buffer_level_db, build_channel_map
)

# Output files are always 32-bit float WAV, whatever the device delivers
OUTPUT_FORMAT = 'WAV'
OUTPUT_SUBTYPE = 'FLOAT'


class CaptureConfig(NamedTuple):
    """Per-sample recording settings."""
    output_path: Path
    channel_layout: str = MONO
    source_channel: int = 0
    samplerate: Optional[int] = None  # None = inherit from device


class CaptureSession:
    """
    Records one sample: open() -> buffers via on_buffer() -> close().

    Sessions are single use. close() detaches the input before the file is
    closed, and on_buffer() ignores anything arriving after that.
    """

    def __init__(self, audio_source, blocksize: Optional[int] = None):
        """
        Initialize the capture session.

        Args:
            audio_source: Object with channel_count, samplerate, start(callback,
                blocksize) and stop() (see AudioEngine)
            blocksize: Frames per buffer requested from the source
        """
        self.audio_source = audio_source
        self.blocksize = blocksize

        self.path: Optional[Path] = None
        self.channel_map: Tuple[int, ...] = ()
        self.device_channels = 0
        self.input_samplerate = 0
        self.output_samplerate = 0

        self._sink: Optional[sf.SoundFile] = None
        self._pipeline: Optional[ChannelConversionPipeline] = None
        self._pipeline_error: Optional[str] = None
        self._opened = False
        self._closed = False

        # Diagnostics (written on the audio thread, read after close)
        self.buffers_received = 0
        self.frames_written = 0
        self.dropped_buffers = 0
        self.last_error: Optional[str] = None
        self.level_db = SILENCE_DB
        self.peak_level_db = SILENCE_DB

    @property
    def is_open(self) -> bool:
        return self._sink is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self, path, config: CaptureConfig) -> None:
        """
        Create the output file and start receiving buffers.

        Args:
            path: Output WAV file path
            config: Channel layout, source channel and sample rate

        Raises:
            CaptureStartError: device unavailable, file not creatable or
                input could not start
        """
        if self._opened:
            raise CaptureStartError("Capture session already used")
        self._opened = True
        self.path = Path(path)

        try:
            self.device_channels = self.audio_source.channel_count
            self.input_samplerate = self.audio_source.samplerate
            self.channel_map = build_channel_map(config.channel_layout,
                                                 config.source_channel,
                                                 self.device_channels)
        except ConversionError as e:
            self._closed = True
            raise CaptureStartError(str(e)) from e
        except Exception as e:
            self._closed = True
            raise CaptureStartError(f"Audio device unavailable: {e}") from e

        self.output_samplerate = int(config.samplerate or self.input_samplerate)

        try:
            self._sink = sf.SoundFile(
                str(self.path), mode='w',
                samplerate=self.output_samplerate,
                channels=len(self.channel_map),
                format=OUTPUT_FORMAT,
                subtype=OUTPUT_SUBTYPE
            )
        except (RuntimeError, OSError) as e:
            self._closed = True
            raise CaptureStartError(f"Cannot create {self.path}: {e}") from e

        try:
            self.audio_source.start(self.on_buffer, self.blocksize)
        except Exception as e:
            sink, self._sink = self._sink, None
            sink.close()
            self._closed = True
            self._remove_partial_file()
            raise CaptureStartError(f"Failed to start audio input: {e}") from e

        logging.debug(f"Capture started: {self.path.name}, input channels "
                      f"{[ch + 1 for ch in self.channel_map]} of {self.device_channels}, "
                      f"{self.input_samplerate}Hz -> {self.output_samplerate}Hz")

    def on_buffer(self, indata, frames=None, time_info=None, status=None) -> None:
        """
        Audio callback: convert one buffer and append it to the file.

        Runs on the audio thread. Buffers arriving before open() or after
        close() are ignored.
        """
        sink = self._sink
        if sink is None:
            return

        self.buffers_received += 1
        if status:
            logging.warning(f"Stream status: {status}")

        if self._pipeline is None:
            if self._pipeline_error is not None:
                self._drop(self._pipeline_error)
                return
            try:
                self._pipeline = ChannelConversionPipeline(
                    self.channel_map, self.input_samplerate, self.output_samplerate
                )
            except ConversionError as e:
                self._pipeline_error = str(e)
                self._drop(self._pipeline_error)
                return

        try:
            converted = self._pipeline.convert(indata)
            self.level_db = buffer_level_db(indata)
        except ConversionError as e:
            self._drop(str(e))
            return
        self.peak_level_db = max(self.peak_level_db, self.level_db)

        try:
            sink.write(converted)
        except (RuntimeError, ValueError) as e:
            if self._sink is None:
                # File closed underneath us
                return
            self._drop(f"Write failed: {e}")
            return
        self.frames_written += len(converted)

    def _drop(self, reason: str) -> None:
        self.dropped_buffers += 1
        self.last_error = reason
        if self.dropped_buffers == 1:
            logging.warning(f"Dropping audio buffer: {reason}")

    def close(self) -> None:
        """
        Stop the input and close the file. Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True

        # Detach the input first so no callback is writing when the file closes
        try:
            self.audio_source.stop()
        except Exception as e:
            logging.warning(f"Failed to stop audio input: {e}")

        sink, self._sink = self._sink, None
        pipeline, self._pipeline = self._pipeline, None
        if sink is not None:
            if pipeline is not None:
                self._write_tail(sink, pipeline)
            sink.close()

        if pipeline is not None and pipeline.observed_channel_count is not None:
            if pipeline.observed_channel_count != self.device_channels:
                record = getattr(self.audio_source, 'record_channel_count', None)
                if record is not None:
                    record(pipeline.observed_channel_count)

        if self.path is not None:
            logging.debug(f"Capture stopped: {self.path.name}, {self.frames_written} frames, "
                          f"peak level {self.peak_level_db:.1f}dB, "
                          f"{self.dropped_buffers} buffers dropped")

    def _write_tail(self, sink, pipeline: ChannelConversionPipeline) -> None:
        # Resampler output still held back for the filter delay
        try:
            tail = pipeline.flush()
            if len(tail):
                sink.write(tail)
                self.frames_written += len(tail)
        except (ConversionError, RuntimeError, ValueError) as e:
            self._drop(f"Tail write failed: {e}")

    def discard(self) -> None:
        """Close the session and delete its file (an interrupted take)."""
        self.close()
        if self.path is not None:
            self._remove_partial_file()

    def _remove_partial_file(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logging.warning(f"Could not remove {self.path}: {e}")
