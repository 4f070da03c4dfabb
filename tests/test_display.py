"""
Tests for the terminal status line.
"""

import io
import os
import sys
import unittest

project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from samplebot.sampling.display import StatusDisplay
from samplebot.sampling.sample_queue import SampleEvent
from samplebot.sampling.state_machine import DONE, SUSTAINING, SamplingState


class TestStatusDisplay(unittest.TestCase):

    def make_state(self, **values):
        state = SamplingState()
        state.__dict__.update(values)
        return state

    def test_progress_bar(self):
        display = StatusDisplay(io.StringIO(), bar_width=10)
        bar = display.progress_bar(0.5)
        self.assertEqual(bar.count(display.FILLED_CHAR), 5)
        self.assertEqual(bar.count(display.EMPTY_CHAR), 5)
        self.assertTrue(bar.endswith(' 50.0%'))

    def test_renders_current_event(self):
        stream = io.StringIO()
        display = StatusDisplay(stream)
        display.update(self.make_state(running=True, phase=SUSTAINING, progress=0.25,
                                       current_event=SampleEvent(60, 100),
                                       status='Sampling C4 (60) Vel 100'))
        output = stream.getvalue()
        self.assertTrue(output.startswith('\r'))
        self.assertIn('C4 v100', output)
        self.assertIn('Sustaining', output)
        self.assertNotIn('\n', output)

    def test_finished_run_ends_line(self):
        stream = io.StringIO()
        display = StatusDisplay(stream)
        display.update(self.make_state(running=False, phase=DONE, progress=1.0, status='Done!'))
        self.assertTrue(stream.getvalue().endswith('\n'))
        self.assertIn('100.0%', stream.getvalue())


if __name__ == '__main__':
    unittest.main()
