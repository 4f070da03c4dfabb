"""
Tests for channel mapping and buffer conversion.
"""

import os
import sys
import unittest

import numpy as np
from scipy import signal

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from samplebot.errors import ConversionError
from samplebot.sampling.channel_pipeline import (
    MONO, PLANAR, SILENCE_DB, STEREO, ChannelConversionPipeline, StreamResampler,
    buffer_level_db, build_channel_map
)


def sine(amplitude, freq, samplerate, frames):
    t = np.arange(frames) / samplerate
    return amplitude * np.sin(2 * np.pi * freq * t)


class TestBuildChannelMap(unittest.TestCase):

    def test_mono_uses_source_channel(self):
        self.assertEqual(build_channel_map(MONO, 3, 8), (3,))

    def test_mono_out_of_range_falls_back_to_first_channel(self):
        self.assertEqual(build_channel_map(MONO, 5, 2), (0,))
        self.assertEqual(build_channel_map(MONO, -1, 2), (0,))

    def test_stereo_pair(self):
        self.assertEqual(build_channel_map(STEREO, 2, 4), (2, 3))

    def test_stereo_on_last_channel_is_dual_mono(self):
        self.assertEqual(build_channel_map(STEREO, 3, 4), (3, 3))
        self.assertEqual(build_channel_map(STEREO, 0, 1), (0, 0))

    def test_no_channels(self):
        with self.assertRaises(ConversionError):
            build_channel_map(MONO, 0, 0)

    def test_unknown_layout(self):
        with self.assertRaises(ConversionError):
            build_channel_map('quad', 0, 4)


class TestChannelConversionPipeline(unittest.TestCase):

    def test_selects_mapped_channels(self):
        pipeline = ChannelConversionPipeline((2, 3), 48000)
        buffer = np.arange(16, dtype=np.float32).reshape(4, 4) / 100
        out = pipeline.convert(buffer)
        self.assertEqual(out.shape, (4, 2))
        self.assertEqual(out.dtype, np.float32)
        np.testing.assert_allclose(out, buffer[:, 2:4])

    def test_dual_mono_duplicates_channel(self):
        pipeline = ChannelConversionPipeline((1, 1), 44100)
        buffer = np.array([[0.1, 0.5], [0.2, -0.5]], dtype=np.float32)
        out = pipeline.convert(buffer)
        np.testing.assert_allclose(out[:, 0], out[:, 1])
        np.testing.assert_allclose(out[:, 0], [0.5, -0.5])

    def test_int16_scaled_to_float(self):
        pipeline = ChannelConversionPipeline((0,), 44100)
        buffer = np.array([[16384], [-32768], [0]], dtype=np.int16)
        out = pipeline.convert(buffer)
        np.testing.assert_allclose(out[:, 0], [0.5, -1.0, 0.0])

    def test_planar_input(self):
        pipeline = ChannelConversionPipeline((1,), 44100, layout=PLANAR)
        buffer = np.array([[0.0, 0.0, 0.0], [0.1, 0.2, 0.3]], dtype=np.float32)
        out = pipeline.convert(buffer)
        np.testing.assert_allclose(out[:, 0], [0.1, 0.2, 0.3], rtol=1e-6)

    def test_one_dimensional_buffer_is_single_channel(self):
        pipeline = ChannelConversionPipeline((0,), 44100)
        out = pipeline.convert(np.array([0.25, -0.25], dtype=np.float32))
        self.assertEqual(out.shape, (2, 1))

    def test_buffer_reused_until_frame_count_changes(self):
        pipeline = ChannelConversionPipeline((0,), 44100)
        block = np.zeros((256, 2), dtype=np.float32)
        first = pipeline.convert(block)
        second = pipeline.convert(block)
        self.assertIs(first, second)
        self.assertEqual(pipeline.reallocations, 1)

        pipeline.convert(np.zeros((128, 2), dtype=np.float32))
        self.assertEqual(pipeline.reallocations, 2)

    def test_too_few_channels(self):
        pipeline = ChannelConversionPipeline((0, 1), 44100)
        with self.assertRaises(ConversionError):
            pipeline.convert(np.zeros((64, 1), dtype=np.float32))
        self.assertEqual(pipeline.observed_channel_count, 1)

    def test_unsupported_sample_format(self):
        pipeline = ChannelConversionPipeline((0,), 44100)
        with self.assertRaises(ConversionError):
            pipeline.convert(np.zeros((4, 1), dtype=np.complex64))

    def test_resampling_changes_frame_count(self):
        pipeline = ChannelConversionPipeline((0,), 48000, 44100)
        self.assertTrue(pipeline.resampling)
        out = pipeline.convert(np.zeros((480, 1), dtype=np.float32))
        tail = pipeline.flush()
        self.assertEqual(out.dtype, np.float32)
        self.assertEqual(tail.dtype, np.float32)
        self.assertEqual(len(out) + len(tail), 441)
        self.assertEqual(tail.shape[1], 1)

    def test_no_resampling_flush_is_empty(self):
        pipeline = ChannelConversionPipeline((0, 1), 48000, 48000)
        pipeline.convert(np.zeros((64, 2), dtype=np.float32))
        self.assertEqual(pipeline.flush().shape, (0, 2))

    def test_resampled_buffers_join_without_clicks(self):
        tone = sine(0.5, 440.0, 44100, 44100)
        pipeline = ChannelConversionPipeline((0,), 44100, 48000)
        chunks = [pipeline.convert(tone[i:i + 441, np.newaxis])
                  for i in range(0, len(tone), 441)]
        chunks.append(pipeline.flush())
        streamed = np.concatenate(chunks)[:, 0]

        whole = signal.resample_poly(tone, 160, 147)
        self.assertEqual(len(streamed), len(whole))
        self.assertLess(np.max(np.abs(streamed - whole)), 1e-4)

    def test_unsupported_rate_pairing(self):
        with self.assertRaises(ConversionError):
            ChannelConversionPipeline((0,), 44100, 44101)



class TestStreamResampler(unittest.TestCase):

    def stream(self, resampler, audio, sizes):
        chunks = []
        pos = 0
        for size in sizes:
            chunks.append(resampler.process(audio[pos:pos + size]))
            pos += size
        chunks.append(resampler.process(audio[pos:]))
        chunks.append(resampler.flush())
        return np.concatenate(chunks)

    def test_matches_single_pass_for_uneven_buffers(self):
        rng = np.random.default_rng(1)
        audio = rng.uniform(-0.5, 0.5, (5000, 2))
        for up, down in ((160, 147), (147, 160), (1, 2), (3, 1)):
            with self.subTest(up=up, down=down):
                out = self.stream(StreamResampler(up, down, 2), audio, [1, 7, 300, 0, 1024, 33])
                whole = signal.resample_poly(audio, up, down, axis=0)
                self.assertEqual(out.shape, whole.shape)
                self.assertLess(np.max(np.abs(out - whole)), 1e-5)

    def test_output_lags_by_filter_delay(self):
        resampler = StreamResampler(160, 147, 1)
        self.assertEqual(len(resampler.process(np.ones((10, 1)))), 0)
        self.assertEqual(resampler.frames_in, 10)

    def test_flush_without_input(self):
        self.assertEqual(StreamResampler(2, 1, 2).flush().shape, (0, 2))


class TestBufferLevel(unittest.TestCase):

    def test_silence(self):
        self.assertEqual(buffer_level_db(np.zeros((64, 2), dtype=np.float32)), SILENCE_DB)

    def test_full_scale_square_is_zero_db(self):
        buffer = np.array([[1.0], [-1.0]] * 32, dtype=np.float32)
        self.assertAlmostEqual(buffer_level_db(buffer), 0.0, places=5)


if __name__ == '__main__':
    unittest.main()
