"""
Analysis Module

Normalization of raw cluster objects into records and rule-based
classification of those records into findings.
"""

from .normalizer import Normalizer
from .rules import (
    EXIT_CODES,
    NEXT_PASS,
    Classifier,
    certificate_status,
    classify_exit_code,
    data_shape_findings,
    sort_findings,
    suggest_passes,
)

__all__ = [
    "Normalizer",
    "Classifier",
    "EXIT_CODES",
    "NEXT_PASS",
    "certificate_status",
    "classify_exit_code",
    "data_shape_findings",
    "sort_findings",
    "suggest_passes",
]
