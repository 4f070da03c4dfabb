"""
Sampling queue generation.

Builds the ordered list of (note, velocity) events for a run: every note of
the range, and for each note every velocity layer.
"""

import math
from typing import Iterable, List, NamedTuple, Optional

from samplebot.errors import ConfigurationError


class SampleEvent(NamedTuple):
    """One note to sample."""
    note: int      # 0-127
    velocity: int  # 1-127


def note_range(start: int, end: int, step: int = 1) -> List[int]:
    """
    Notes from start to end in steps of step.

    The end note is always included, even when step does not land on it,
    so the top of the range is always sampled. An inverted range
    (start > end) is empty.
    """
    if step < 1:
        raise ConfigurationError(f"Note interval must be at least 1, got {step}")
    for name, value in (('start', start), ('end', end)):
        if not 0 <= value <= 127:
            raise ConfigurationError(f"Note range {name} must be 0-127, got {value}")

    if start > end:
        return []
    notes = list(range(start, end + 1, step))
    if notes[-1] != end:
        notes.append(end)
    return notes


def build_sampling_queue(start: int, end: int, step: int,
                         velocities: Iterable[int]) -> List[SampleEvent]:
    """
    Build the sampling queue, pitch-major and velocity-minor.

    Args:
        start: First MIDI note
        end: Last MIDI note (inclusive)
        step: Note interval (1=chromatic, 12=octaves)
        velocities: Velocity layers, duplicates are ignored

    Returns:
        List of SampleEvent
    """
    layers = list(dict.fromkeys(int(v) for v in velocities))
    for velocity in layers:
        if not 1 <= velocity <= 127:
            raise ConfigurationError(f"Velocity must be 1-127, got {velocity}")

    return [SampleEvent(note, velocity)
            for note in note_range(start, end, step)
            for velocity in layers]


def calculate_velocity_layers(layers: int, minimum: int = 1,
                              splits: Optional[List[int]] = None) -> List[int]:
    """
    Velocities for a number of velocity layers.

    With split points, each layer is sampled at its split value and the top
    layer at 127. Otherwise layers follow an exponential curve from minimum
    to 127, denser towards the top where velocity changes are most audible.

    Args:
        layers: Number of velocity layers
        minimum: Velocity of the lowest layer
        splits: Optional explicit split points

    Returns:
        Ascending list of velocities
    """
    if layers < 1:
        raise ConfigurationError(f"Velocity layers must be at least 1, got {layers}")

    if splits:
        return [splits[layer] if layer < len(splits) else 127 for layer in range(layers)]

    if layers == 1:
        return [127]

    curve_factor = 2.0
    velocities = []
    for layer in range(layers):
        position = layer / (layers - 1)
        curved = (math.pow(curve_factor, position) - 1) / (curve_factor - 1)
        velocity = int(minimum + (127 - minimum) * curved)
        velocities.append(max(1, min(127, velocity)))
    return velocities
