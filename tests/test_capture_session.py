"""
Tests for single sample recording.

A fake audio source stands in for the sound card: the test pushes buffers
into the session callback by hand.
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np
import soundfile as sf
from scipy import signal

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from samplebot.errors import CaptureStartError
from samplebot.sampling.capture_session import CaptureConfig, CaptureSession
from samplebot.sampling.channel_pipeline import MONO, STEREO


class FakeAudioSource:
    """Audio input driven by the test."""

    def __init__(self, channels=2, samplerate=48000, fail_start=False):
        self.channel_count = channels
        self.samplerate = samplerate
        self.fail_start = fail_start
        self.callback = None
        self.stop_calls = 0
        self.recorded_counts = []

    def start(self, callback, blocksize=None):
        if self.fail_start:
            raise RuntimeError("device busy")
        self.callback = callback

    def stop(self):
        self.callback = None
        self.stop_calls += 1

    def record_channel_count(self, count):
        self.recorded_counts.append(count)

    def push(self, buffer):
        if self.callback is not None:
            self.callback(buffer, len(buffer), None, None)


def stereo_block(frames=512, left=0.25, right=-0.5):
    block = np.empty((frames, 2), dtype=np.float32)
    block[:, 0] = left
    block[:, 1] = right
    return block


class TestCaptureSession(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.folder = Path(self.tmp.name)
        self.source = FakeAudioSource()

    def tearDown(self):
        self.tmp.cleanup()

    def open_session(self, name='take.wav', layout=MONO, channel=0, samplerate=None):
        path = self.folder / name
        session = CaptureSession(self.source)
        session.open(path, CaptureConfig(path, layout, channel, samplerate))
        return session, path

    def test_records_selected_channel(self):
        session, path = self.open_session(channel=1)
        for _ in range(3):
            self.source.push(stereo_block())
        session.close()

        audio, samplerate = sf.read(str(path), dtype='float32', always_2d=True)
        self.assertEqual(samplerate, 48000)
        self.assertEqual(audio.shape, (1536, 1))
        np.testing.assert_allclose(audio[:, 0], -0.5)
        self.assertEqual(sf.info(str(path)).subtype, 'FLOAT')
        self.assertEqual(session.frames_written, 1536)
        self.assertEqual(session.dropped_buffers, 0)

    def test_stereo_file(self):
        session, path = self.open_session(layout=STEREO)
        self.source.push(stereo_block(256))
        session.close()

        audio, _ = sf.read(str(path), dtype='float32', always_2d=True)
        self.assertEqual(audio.shape, (256, 2))
        np.testing.assert_allclose(audio[0], [0.25, -0.5])

    def test_pipeline_built_once_on_first_buffer(self):
        session, _ = self.open_session()
        self.assertIsNone(session._pipeline)
        self.source.push(stereo_block())
        pipeline = session._pipeline
        self.assertIsNotNone(pipeline)
        self.source.push(stereo_block())
        self.assertIs(session._pipeline, pipeline)
        self.assertEqual(pipeline.reallocations, 1)
        session.close()

    def test_close_is_idempotent(self):
        session, path = self.open_session()
        self.source.push(stereo_block())
        session.close()
        session.close()
        self.assertTrue(session.closed)
        self.assertEqual(self.source.stop_calls, 1)
        self.assertEqual(sf.info(str(path)).frames, 512)

    def test_buffers_after_close_are_ignored(self):
        session, path = self.open_session()
        callback = self.source.callback
        self.source.push(stereo_block())
        session.close()

        # Late callback from the audio thread
        callback(stereo_block(), 512, None, None)
        self.assertEqual(session.frames_written, 512)
        self.assertEqual(sf.info(str(path)).frames, 512)

    def test_start_failure_removes_file(self):
        self.source.fail_start = True
        path = self.folder / 'failed.wav'
        session = CaptureSession(self.source)
        with self.assertRaises(CaptureStartError):
            session.open(path, CaptureConfig(path))
        self.assertFalse(path.exists())
        self.assertTrue(session.closed)

    def test_unwritable_file(self):
        path = self.folder / 'missing' / 'take.wav'
        session = CaptureSession(self.source)
        with self.assertRaises(CaptureStartError):
            session.open(path, CaptureConfig(path))
        self.assertIsNone(self.source.callback)

    def test_session_is_single_use(self):
        session, path = self.open_session()
        session.close()
        with self.assertRaises(CaptureStartError):
            session.open(path, CaptureConfig(path))

    def test_bad_buffer_dropped_and_recording_continues(self):
        session, path = self.open_session(layout=STEREO)
        self.source.push(stereo_block(128))
        self.source.push(np.zeros((128, 2, 2), dtype=np.float32))
        self.source.push(stereo_block(128))
        session.close()

        self.assertEqual(session.dropped_buffers, 1)
        self.assertIsNotNone(session.last_error)
        self.assertEqual(sf.info(str(path)).frames, 256)

    def test_reports_observed_channel_count(self):
        self.source.channel_count = 8
        session, _ = self.open_session()
        self.source.push(stereo_block())
        session.close()
        self.assertEqual(self.source.recorded_counts, [2])

    def test_level_tracking(self):
        session, _ = self.open_session()
        self.source.push(stereo_block(256, left=0.0, right=0.0))
        self.source.push(stereo_block(256, left=1.0, right=-1.0))
        session.close()
        self.assertAlmostEqual(session.peak_level_db, 0.0, places=4)

    def test_resampled_output(self):
        session, path = self.open_session(samplerate=44100)
        self.source.push(stereo_block(480))
        session.close()
        info = sf.info(str(path))
        self.assertEqual(info.samplerate, 44100)
        self.assertEqual(info.frames, 441)
        self.assertEqual(session.frames_written, 441)

    def test_resampled_take_is_continuous(self):
        t = np.arange(48000) / 48000
        tone = (0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)
        session, path = self.open_session(samplerate=44100)
        for i in range(0, len(tone), 480):
            block = np.repeat(tone[i:i + 480, np.newaxis], 2, axis=1)
            self.source.push(block)
        session.close()

        audio, rate = sf.read(str(path), dtype='float64')
        whole = signal.resample_poly(tone.astype(np.float64), 147, 160)
        self.assertEqual(rate, 44100)
        self.assertEqual(len(audio), len(whole))
        self.assertLess(np.max(np.abs(audio - whole)), 1e-4)

    def test_discard_deletes_file(self):
        session, path = self.open_session()
        self.source.push(stereo_block())
        session.discard()
        self.assertTrue(session.closed)
        self.assertFalse(path.exists())
        self.assertIsNone(self.source.callback)


if __name__ == '__main__':
    unittest.main()
