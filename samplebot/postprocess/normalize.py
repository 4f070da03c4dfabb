"""
Normalization operations for postprocessing
"""

import os
import tempfile
import numpy as np
import logging
import soundfile as sf
from pathlib import Path
from typing import List, Tuple

from samplebot.errors import NormalizationError
from samplebot.postprocess.gain import db_to_linear, linear_to_db

PEAK = 'peak'
RMS = 'rms'

DEFAULT_TARGET_DB = -0.1
DEFAULT_RMS_TARGET_DB = -18.0

# Gains closer to 1.0 than this leave the file untouched
GAIN_TOLERANCE = 1e-6


def calculate_normalization_gain(audio: np.ndarray, target_db: float = DEFAULT_TARGET_DB,
                                 mode: str = PEAK,
                                 rms_target_db: float = DEFAULT_RMS_TARGET_DB) -> float:
    """
    Gain that brings audio to the target level without clipping.

    Peak mode scales the loudest sample to target_db. RMS mode scales the
    RMS level to rms_target_db but never lets the peak exceed target_db.
    Silent audio gets a gain of 1.0.

    Args:
        audio: Audio data as numpy array
        target_db: Peak ceiling in dBFS
        mode: 'peak' or 'rms'
        rms_target_db: RMS target in dBFS (rms mode only)

    Returns:
        Linear gain factor
    """
    peak = float(np.abs(audio).max()) if audio.size else 0.0
    if peak == 0:
        return 1.0

    ceiling_gain = db_to_linear(target_db) / peak
    if mode == PEAK:
        return ceiling_gain
    if mode == RMS:
        rms = float(np.sqrt(np.mean(np.square(audio, dtype=np.float64))))
        return min(db_to_linear(rms_target_db) / rms, ceiling_gain)

    raise ValueError(f"Unknown normalization mode: {mode}")


def normalize_sample(audio: np.ndarray, target_db: float = DEFAULT_TARGET_DB,
                     mode: str = PEAK) -> np.ndarray:
    """
    Normalize single sample to target level.

    Args:
        audio: Audio data as numpy array
        target_db: Peak ceiling in dBFS
        mode: 'peak' or 'rms'

    Returns:
        Normalized audio
    """
    gain = calculate_normalization_gain(audio, target_db, mode)
    if gain == 1.0:
        logging.warning("Audio is silent, cannot normalize")
        return audio

    ceiling = db_to_linear(target_db)
    normalized = np.clip(audio * gain, -ceiling, ceiling).astype(audio.dtype, copy=False)
    logging.debug(f"Sample normalized: gain {linear_to_db(gain):+.2f}dB")
    return normalized


def read_sample(path) -> Tuple[np.ndarray, int, object]:
    """Read a whole sample file as float32 (frames x channels)."""
    try:
        info = sf.info(str(path))
        audio, samplerate = sf.read(str(path), dtype='float32', always_2d=True)
    except (RuntimeError, OSError) as e:
        raise NormalizationError(f"Cannot read {path}: {e}") from e
    return audio, samplerate, info


def write_sample_atomic(path, audio: np.ndarray, samplerate: int, info) -> None:
    """
    Replace a sample file through a temp file in the same folder.

    The original stays untouched if writing fails.
    """
    path = Path(path)
    fd, tmp_path = tempfile.mkstemp(suffix=path.suffix, prefix='.tmp_', dir=str(path.parent))
    os.close(fd)
    try:
        sf.write(tmp_path, audio, samplerate, subtype=info.subtype, format=info.format)
        os.replace(tmp_path, path)
    except (RuntimeError, OSError) as e:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise NormalizationError(f"Cannot write {path}: {e}") from e


def normalize_file(path, target_db: float = DEFAULT_TARGET_DB, mode: str = PEAK,
                   rms_target_db: float = DEFAULT_RMS_TARGET_DB) -> float:
    """
    Normalize a finished sample file in place.

    Args:
        path: WAV file path
        target_db: Peak ceiling in dBFS
        mode: 'peak' or 'rms'
        rms_target_db: RMS target in dBFS (rms mode only)

    Returns:
        Linear gain that was applied (1.0 when the file was left unchanged)

    Raises:
        NormalizationError: file unreadable or could not be rewritten
    """
    audio, samplerate, info = read_sample(path)
    gain = calculate_normalization_gain(audio, target_db, mode, rms_target_db)

    if abs(gain - 1.0) < GAIN_TOLERANCE:
        if not np.any(audio):
            logging.warning(f"{Path(path).name} is silent, not normalized")
        else:
            logging.debug(f"{Path(path).name} already at target level")
        return 1.0

    ceiling = db_to_linear(target_db)
    normalized = np.clip(audio * np.float32(gain), -ceiling, ceiling)
    write_sample_atomic(path, normalized, samplerate, info)

    logging.info(f"Normalized {Path(path).name}: gain {linear_to_db(gain):+.2f}dB")
    return gain


def normalize_patch(sample_paths: List, target_db: float = DEFAULT_TARGET_DB) -> float:
    """
    Normalize all samples in a patch by one shared gain.
    The loudest sample reaches target_db, relative dynamics are kept.

    Args:
        sample_paths: List of WAV file paths
        target_db: Peak ceiling in dBFS

    Returns:
        Linear gain that was applied
    """
    if not sample_paths:
        logging.warning("No samples to normalize")
        return 1.0

    logging.info(f"Patch normalization: analyzing {len(sample_paths)} samples...")

    # Step 1: Find global peak across all samples
    global_peak = 0.0
    audio_data = []

    for path in sample_paths:
        try:
            audio, samplerate, info = read_sample(path)
        except NormalizationError as e:
            logging.error(str(e))
            continue
        audio_data.append((audio, samplerate, info, path))
        if audio.size:
            global_peak = max(global_peak, float(np.abs(audio).max()))

    if global_peak == 0:
        logging.warning("All samples are silent, cannot normalize")
        return 1.0

    # Step 2: Calculate scale factor
    scale_factor = db_to_linear(target_db) / global_peak
    logging.info(f"Global peak: {linear_to_db(global_peak):.2f}dB, "
                 f"gain: {linear_to_db(scale_factor):+.2f}dB")

    # Step 3: Apply normalization and save
    for audio, samplerate, info, path in audio_data:
        try:
            write_sample_atomic(path, audio * np.float32(scale_factor), samplerate, info)
            logging.debug(f"Normalized: {Path(path).name}")
        except NormalizationError as e:
            logging.error(str(e))

    logging.info(f"Patch normalization complete: {len(audio_data)} samples normalized")
    return scale_factor
