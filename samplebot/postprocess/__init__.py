"""
Postprocessing operations for SampleBot
Each operation is isolated and applied to finished sample files.
"""

from .gain import apply_gain, db_to_linear, linear_to_db
from .normalize import (
    calculate_normalization_gain, normalize_file, normalize_patch, normalize_sample
)
from .processor import PostProcessor

__all__ = [
    'apply_gain',
    'db_to_linear',
    'linear_to_db',
    'calculate_normalization_gain',
    'normalize_file',
    'normalize_patch',
    'normalize_sample',
    'PostProcessor',
]
