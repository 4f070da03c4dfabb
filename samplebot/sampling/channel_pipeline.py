"""
Channel selection and sample format conversion for captured audio.

This module provides:
- build_channel_map: picks the input channel(s) feeding a mono or stereo file
- ChannelConversionPipeline: per-buffer channel mapping, float conversion
  and optional sample rate conversion
- StreamResampler: polyphase resampling that carries filter state across
  buffers
- buffer_level_db: RMS level of a raw buffer in dBFS
"""

import logging
import math
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import signal

from samplebot.errors import ConversionError

MONO = 'mono'
STEREO = 'stereo'

INTERLEAVED = 'interleaved'  # frames x channels (sounddevice default)
PLANAR = 'planar'            # channels x frames

OUTPUT_DTYPE = np.float32
SILENCE_DB = -100.0

# Largest up/down factor accepted for sample rate conversion
MAX_RESAMPLE_FACTOR = 1000

# (offset, divisor) turning device-native samples into -1.0..1.0 floats
_SAMPLE_SCALES = {
    np.dtype('int8'): (0.0, 128.0),
    np.dtype('uint8'): (128.0, 128.0),
    np.dtype('int16'): (0.0, 32768.0),
    np.dtype('int32'): (0.0, 2147483648.0),
    np.dtype('float32'): (0.0, 1.0),
    np.dtype('float64'): (0.0, 1.0),
}


def build_channel_map(channel_layout: str, source_channel: int,
                      device_channels: int) -> Tuple[int, ...]:
    """
    Build the list of device channels feeding each output channel.

    Mono uses source_channel, or channel 0 when it is out of range.
    Stereo uses the pair (source_channel, source_channel + 1); when the
    second channel does not exist the first one is used for both sides.

    Args:
        channel_layout: 'mono' or 'stereo'
        source_channel: First input channel (0-based)
        device_channels: Number of input channels the device reports

    Returns:
        Tuple of 1 (mono) or 2 (stereo) device channel indices
    """
    if device_channels < 1:
        raise ConversionError(f"Input device reports {device_channels} channels")

    first = source_channel if 0 <= source_channel < device_channels else 0
    if first != source_channel:
        logging.warning(f"Input channel {source_channel + 1} not available "
                        f"({device_channels} channels) - using channel 1")

    if channel_layout == MONO:
        return (first,)
    if channel_layout == STEREO:
        second = first + 1
        if second >= device_channels:
            logging.warning(f"No channel {second + 1} for stereo pair - "
                            f"recording channel {first + 1} on both sides")
            second = first
        return (first, second)

    raise ConversionError(f"Unknown channel layout: {channel_layout}")


def _sample_scale(dtype) -> Tuple[float, float]:
    try:
        return _SAMPLE_SCALES[np.dtype(dtype)]
    except (KeyError, TypeError):
        raise ConversionError(f"Unsupported sample format: {dtype}")


def _resample_ratio(input_rate: int, output_rate: int) -> Tuple[int, int]:
    """Return (up, down) integer factors converting input_rate to output_rate."""
    if input_rate <= 0 or output_rate <= 0:
        raise ConversionError(f"Invalid sample rates: {input_rate} -> {output_rate}")
    if int(input_rate) != input_rate or int(output_rate) != output_rate:
        raise ConversionError(f"Fractional sample rates not supported: "
                              f"{input_rate} -> {output_rate}")

    divisor = math.gcd(int(input_rate), int(output_rate))
    up = int(output_rate) // divisor
    down = int(input_rate) // divisor
    if max(up, down) > MAX_RESAMPLE_FACTOR:
        raise ConversionError(f"Unsupported sample rate pairing: "
                              f"{input_rate} -> {output_rate}")
    return up, down


def buffer_level_db(buffer: np.ndarray) -> float:
    """
    RMS level of a raw buffer in dBFS (all channels together).

    Returns SILENCE_DB for an empty or all-zero buffer.
    """
    data = np.asarray(buffer)
    if data.size == 0:
        return SILENCE_DB

    offset, divisor = _sample_scale(data.dtype)
    samples = (data.astype(np.float64) - offset) / divisor
    rms = np.sqrt(np.mean(samples ** 2))
    return 20 * np.log10(rms) if rms > 0 else SILENCE_DB


class StreamResampler:
    """
    Polyphase sample rate conversion for a stream of buffers.

    Produces the same samples as a single scipy.signal.resample_poly() call
    over the whole recording. The input history the filter still needs is
    kept between calls, so there is no discontinuity at buffer boundaries.
    Output lags the input by the filter delay; flush() returns the rest.

    Args:
        up: Upsampling factor
        down: Downsampling factor (coprime with up)
        channels: Number of channels per frame
    """

    def __init__(self, up: int, down: int, channels: int):
        self.up = up
        self.down = down
        self.channels = channels

        # Same anti-aliasing filter and alignment as resample_poly
        max_rate = max(up, down)
        half_len = 10 * max_rate
        taps = signal.firwin(2 * half_len + 1, 1.0 / max_rate, window=('kaiser', 5.0)) * up
        pre_pad = down - half_len % down
        self._taps = np.concatenate((np.zeros(pre_pad), taps))
        self._first_output = (half_len + pre_pad) // down
        self._next_output = self._first_output

        self._history = np.zeros((0, channels))
        self._history_start = 0
        self.frames_in = 0
        self.frames_out = 0

    def _empty(self) -> np.ndarray:
        return np.zeros((0, self.channels), dtype=OUTPUT_DTYPE)

    def _segment_start(self, output_index: int) -> int:
        # First input frame feeding output_index, rounded down to a multiple
        # of down so upfirdn output indices stay aligned
        first = (output_index * self.down - (len(self._taps) - 1)) // self.up
        return (first // self.down) * self.down

    def process(self, block: np.ndarray) -> np.ndarray:
        """
        Feed one buffer (frames x channels).

        Returns:
            float32 array with every output frame that is now complete
        """
        block = np.asarray(block, dtype=np.float64)
        if len(block):
            self._history = np.concatenate((self._history, block))
            self.frames_in += len(block)
        if not self.frames_in:
            return self._empty()
        return self._emit(((self.frames_in - 1) * self.up) // self.down)

    def flush(self) -> np.ndarray:
        """
        End of stream: return the remaining output frames.

        The input is treated as zero after its last frame.
        """
        if not self.frames_in:
            return self._empty()
        total = -(-self.frames_in * self.up // self.down)
        last = self._first_output + total - 1

        end = self._history_start + len(self._history)
        needed = (last * self.down) // self.up + 1
        if needed > end:
            self._history = np.concatenate(
                (self._history, np.zeros((needed - end, self.channels))))
        return self._emit(last)

    def _emit(self, last: int) -> np.ndarray:
        if last < self._next_output:
            return self._empty()

        start = self._segment_start(self._next_output)
        if start < self._history_start:
            # Before the first input frame
            segment = np.concatenate(
                (np.zeros((self._history_start - start, self.channels)), self._history))
        else:
            segment = self._history[start - self._history_start:]

        filtered = signal.upfirdn(self._taps, segment, self.up, self.down, axis=0)
        offset = (start // self.down) * self.up
        result = filtered[self._next_output - offset:last - offset + 1]
        self._next_output = last + 1
        self.frames_out += len(result)

        keep_from = self._segment_start(self._next_output)
        if keep_from > self._history_start:
            self._history = self._history[keep_from - self._history_start:]
            self._history_start = keep_from
        return result.astype(OUTPUT_DTYPE)


class ChannelConversionPipeline:
    """
    Converts raw device buffers into the output file layout.

    The channel map is fixed for the lifetime of the pipeline. Each call to
    convert() picks the mapped channels, turns device-native samples into
    float32 and, when the file rate differs from the device rate, resamples.

    The output buffer is reused between calls and only reallocated when the
    incoming frame count changes. The returned array is only valid until
    the next call.
    """

    def __init__(self, channel_map: Sequence[int], input_samplerate: int,
                 output_samplerate: Optional[int] = None, layout: str = INTERLEAVED):
        """
        Initialize the pipeline.

        Args:
            channel_map: Device channel index for each output channel
            input_samplerate: Sample rate the device delivers
            output_samplerate: Sample rate of the output file (None = same)
            layout: 'interleaved' (frames x channels) or 'planar'
        """
        if not channel_map:
            raise ConversionError("Channel map is empty")
        if layout not in (INTERLEAVED, PLANAR):
            raise ConversionError(f"Unknown buffer layout: {layout}")

        self.channel_map = tuple(int(ch) for ch in channel_map)
        self.input_samplerate = input_samplerate
        self.output_samplerate = output_samplerate or input_samplerate
        self.layout = layout
        self._up, self._down = _resample_ratio(self.input_samplerate,
                                               self.output_samplerate)
        self._resampler: Optional[StreamResampler] = None
        if self._up != self._down:
            self._resampler = StreamResampler(self._up, self._down, self.output_channels)

        self._buffer: Optional[np.ndarray] = None
        self.reallocations = 0

        # Last channel count seen on the wire, reported back after the session
        self.observed_channel_count: Optional[int] = None

    @property
    def output_channels(self) -> int:
        return len(self.channel_map)

    @property
    def resampling(self) -> bool:
        return self._resampler is not None

    def _output_buffer(self, frames: int) -> np.ndarray:
        if self._buffer is None or self._buffer.shape[0] != frames:
            self._buffer = np.empty((frames, self.output_channels), dtype=OUTPUT_DTYPE)
            self.reallocations += 1
            logging.debug(f"Conversion buffer allocated: {frames} frames x "
                          f"{self.output_channels} channels")
        return self._buffer

    def convert(self, buffer) -> np.ndarray:
        """
        Convert one raw buffer.

        Args:
            buffer: Device buffer (interleaved frames x channels, planar
                channels x frames, or 1-D for single-channel devices)

        Returns:
            float32 array of shape (frames, output_channels). When
            resampling, the frame count follows the output rate and lags the
            input by the filter delay (see flush)

        Raises:
            ConversionError: buffer shape, channel count or sample format
                does not fit the pipeline
        """
        data = np.asarray(buffer)
        if data.ndim == 1:
            data = data[:, np.newaxis]
        elif data.ndim != 2:
            raise ConversionError(f"Expected 2-D audio buffer, got {data.ndim}-D")
        if self.layout == PLANAR:
            data = data.T

        frames, channels = data.shape
        self.observed_channel_count = channels

        needed = max(self.channel_map) + 1
        if channels < needed:
            raise ConversionError(f"Buffer has {channels} channels, "
                                  f"channel map needs {needed}")

        offset, divisor = _sample_scale(data.dtype)
        out = self._output_buffer(frames)

        for out_ch, in_ch in enumerate(self.channel_map):
            out[:, out_ch] = data[:, in_ch]
        if offset:
            out -= offset
        if divisor != 1.0:
            out *= 1.0 / divisor

        if self._resampler is not None:
            return self._resampler.process(out)
        return out

    def flush(self) -> np.ndarray:
        """Return the output frames still held back by the resampler."""
        if self._resampler is None:
            return np.zeros((0, self.output_channels), dtype=OUTPUT_DTYPE)
        return self._resampler.flush()
