"""
SampleBot Sampling Package

This package contains the components of a sampling run:
- sample_queue: Note/velocity grid for a run
- channel_pipeline: Device buffer to output channel conversion
- audio_engine: Audio input stream
- capture_session: One sample file recording
- midi_engine: MIDI note on/off operations
- file_manager: Sample naming and SFZ mapping
- scheduler: Deferred call scheduling
- state_machine: Per-note sampling lifecycle
- display: Terminal status line
"""

from samplebot.sampling.sample_queue import SampleEvent, build_sampling_queue
from samplebot.sampling.channel_pipeline import (
    ChannelConversionPipeline, StreamResampler, build_channel_map
)
from samplebot.sampling.audio_engine import AudioEngine
from samplebot.sampling.capture_session import CaptureConfig, CaptureSession
from samplebot.sampling.midi_engine import MIDINoteEngine
from samplebot.sampling.file_manager import FileManager
from samplebot.sampling.scheduler import ManualScheduler, ThreadScheduler
from samplebot.sampling.state_machine import SamplingState, SamplingStateMachine
from samplebot.sampling.display import StatusDisplay

__all__ = [
    'SampleEvent',
    'build_sampling_queue',
    'ChannelConversionPipeline',
    'StreamResampler',
    'build_channel_map',
    'AudioEngine',
    'CaptureConfig',
    'CaptureSession',
    'MIDINoteEngine',
    'FileManager',
    'ManualScheduler',
    'ThreadScheduler',
    'SamplingState',
    'SamplingStateMachine',
    'StatusDisplay',
]
