"""
Gain helpers for postprocessing
Converts between dB and linear gain and applies fixed gain to audio
"""

import numpy as np
import logging

SILENCE_DB = -100.0


def db_to_linear(gain_db: float) -> float:
    """Convert dB to linear multiplier (0 dB = 1.0, +6 dB ~ 2.0)."""
    return 10 ** (gain_db / 20.0)


def linear_to_db(gain: float) -> float:
    """Convert linear amplitude to dB (SILENCE_DB for zero)."""
    return 20 * np.log10(gain) if gain > 0 else SILENCE_DB


def apply_gain(audio: np.ndarray, gain_db: float = 0.0) -> np.ndarray:
    """
    Apply gain to audio.

    Args:
        audio: Audio data as numpy array (float32, range -1.0 to 1.0)
        gain_db: Gain in decibels (e.g., +10.0 for +10dB boost)

    Returns:
        Audio with gain applied
    """
    if gain_db == 0.0:
        return audio

    gain_linear = db_to_linear(gain_db)
    gained_audio = (audio * gain_linear).astype(audio.dtype, copy=False)

    logging.debug(f"Applied gain: {gain_db:+.1f}dB (linear multiplier: {gain_linear:.3f}x)")

    return gained_audio
