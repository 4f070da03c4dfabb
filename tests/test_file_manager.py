"""
Tests for sample naming and SFZ generation.
"""

import os
import sys
import tempfile
import unittest
from pathlib import Path

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from samplebot.sampling.file_manager import FileManager, midi_note_name
from samplebot.sampling.sample_queue import SampleEvent


class TestFileManager(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.folder = Path(self.tmp.name)
        self.manager = FileManager({'output_folder': self.tmp.name, 'sample_name': 'Pad'})

    def tearDown(self):
        self.tmp.cleanup()

    def test_note_names(self):
        self.assertEqual(midi_note_name(60), 'C4')
        self.assertEqual(midi_note_name(69), 'A4')
        self.assertEqual(midi_note_name(0), 'C-1')
        self.assertEqual(midi_note_name(61), 'C#4')

    def test_filename(self):
        path = self.manager.sample_path(SampleEvent(60, 64))
        self.assertEqual(path, self.folder / 'Pad_060_C4_v064.wav')

    def test_filenames_are_unique_per_event(self):
        events = [SampleEvent(n, v) for n in range(0, 128, 7) for v in (1, 64, 127)]
        names = {self.manager.generate_sample_filename(e) for e in events}
        self.assertEqual(len(names), len(events))

    def test_no_output_folder(self):
        self.assertIsNone(FileManager({}).output_folder)

    def test_prepare_output_folder(self):
        manager = FileManager({'output_folder': str(self.folder / 'a' / 'b')})
        manager.prepare_output_folder()
        self.assertTrue((self.folder / 'a' / 'b').is_dir())

    def test_sfz_mapping(self):
        samples = [(SampleEvent(n, v), self.manager.sample_path(SampleEvent(n, v)))
                   for n in (48, 60) for v in (64, 127)]
        self.assertTrue(self.manager.generate_sfz(samples))

        text = (self.folder / 'Pad.sfz').read_text(encoding='utf-8')
        self.assertEqual(text.count('<group>'), 2)
        self.assertEqual(text.count('<region>'), 4)
        self.assertIn('lovel=1\nhivel=64', text)
        self.assertIn('lovel=65\nhivel=127', text)
        self.assertIn('sample=Pad_048_C3_v064.wav', text)
        self.assertIn('pitch_keycenter=60\nlokey=55\nhikey=127', text)

    def test_sfz_without_samples(self):
        self.assertFalse(self.manager.generate_sfz([]))
        self.assertFalse((self.folder / 'Pad.sfz').exists())


if __name__ == '__main__':
    unittest.main()
