"""
SampleBot - unattended instrument sampler.

Sends MIDI notes across a pitch/velocity grid, records each note to its own
WAV file with the selected input channels and optionally normalizes it.
"""

__version__ = "0.3.0"
