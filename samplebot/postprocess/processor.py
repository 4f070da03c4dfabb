"""
Postprocessing orchestrator
Applies normalization and gain to finished samples, one at a time during a
sampling run or as a batch over a folder
"""

import logging
from pathlib import Path
from typing import Dict, List

from samplebot.errors import ConfigurationError, NormalizationError
from . import gain
from . import normalize


class PostProcessor:
    """
    Applies configured postprocessing operations to sample files.

    Operations (postprocessing config section):
        'normalize': True,            # Normalize each sample (sampling runs)
        'sample_normalize': False,    # Normalize each sample (batch mode)
        'patch_normalize': False,     # One shared gain for all samples (batch mode)
        'normalize_mode': 'peak',     # 'peak' or 'rms'
        'target_db': -0.1,            # Peak ceiling in dBFS
        'rms_target_db': -18.0,       # RMS target in dBFS ('rms' mode)
        'gain_db': 0.0                # Extra gain after normalization
    """

    def __init__(self, operations: Dict = None):
        self.operations = dict(operations or {})
        self.mode = self.operations.get('normalize_mode', normalize.PEAK)
        self.target_db = self.operations.get('target_db', normalize.DEFAULT_TARGET_DB)
        self.rms_target_db = self.operations.get('rms_target_db', normalize.DEFAULT_RMS_TARGET_DB)
        self.gain_db = self.operations.get('gain_db', 0.0) or 0.0

    def validate(self) -> None:
        """
        Check the settings before a run starts.

        Raises:
            ConfigurationError: unknown mode or a level that is not a number
        """
        if self.mode not in (normalize.PEAK, normalize.RMS):
            raise ConfigurationError(f"normalize_mode must be '{normalize.PEAK}' or "
                                     f"'{normalize.RMS}', got {self.mode!r}")
        for name in ('target_db', 'rms_target_db', 'gain_db'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"{name} must be a number, got {value!r}")
        if self.target_db > 0:
            raise ConfigurationError(f"target_db must be 0 dBFS or below, got {self.target_db}")

    @property
    def enabled(self) -> bool:
        """True if per-sample processing has anything to do."""
        return bool(self.operations.get('normalize')) or self.gain_db != 0.0

    def process_sample(self, sample_path, normalize_sample: bool = None) -> float:
        """
        Normalize and/or apply gain to one finished sample.

        Args:
            sample_path: WAV file path
            normalize_sample: Override the 'normalize' operation

        Returns:
            Total linear gain applied

        Raises:
            NormalizationError: file unreadable or could not be rewritten
        """
        if normalize_sample is None:
            normalize_sample = bool(self.operations.get('normalize'))

        total_gain = 1.0
        if normalize_sample:
            total_gain = normalize.normalize_file(sample_path, self.target_db, self.mode,
                                                  self.rms_target_db)

        if self.gain_db != 0.0:
            audio, samplerate, info = normalize.read_sample(sample_path)
            normalize.write_sample_atomic(sample_path, gain.apply_gain(audio, self.gain_db),
                                          samplerate, info)
            total_gain *= gain.db_to_linear(self.gain_db)
            logging.debug(f"Gain applied to {Path(sample_path).name}: {self.gain_db:+.1f}dB")

        return total_gain

    def process_samples(self, sample_paths: List) -> int:
        """
        Apply postprocessing to a batch of samples.

        Patch normalization runs first over all files; per-sample
        normalization is skipped when it is enabled. Failures are logged
        and the remaining files are still processed.

        Args:
            sample_paths: List of WAV file paths

        Returns:
            Number of samples processed without error
        """
        if not sample_paths:
            logging.info("No samples to process")
            return 0

        logging.info(f"\n{'='*70}")
        logging.info("POST-PROCESSING")
        logging.info(f"{'='*70}")
        logging.info(f"Processing {len(sample_paths)} samples...")

        patch_normalize = bool(self.operations.get('patch_normalize'))
        if patch_normalize:
            logging.info("\nApplying patch normalization...")
            normalize.normalize_patch(sample_paths, target_db=self.target_db)

        sample_normalize = bool(self.operations.get('sample_normalize')) and not patch_normalize

        processed = 0
        for idx, sample_path in enumerate(sample_paths, 1):
            filename = Path(sample_path).name
            logging.info(f"[{idx}/{len(sample_paths)}] Processing: {filename}")
            try:
                self.process_sample(sample_path, normalize_sample=sample_normalize)
                processed += 1
            except NormalizationError as e:
                logging.error(f"  Failed to process {filename}: {e}")

        logging.info(f"{'='*70}")
        logging.info("POST-PROCESSING COMPLETE")
        logging.info(f"{'='*70}\n")
        return processed
