"""TidyUp data models."""

from tidyup.models.candidate import CandidateEntry, ScanBatch, ScanResult, merge_results
from tidyup.models.clean_result import CleanResult
from tidyup.models.permissions import PermissionReport, PermissionVerdict

__all__ = [
    "CandidateEntry",
    "CleanResult",
    "PermissionReport",
    "PermissionVerdict",
    "ScanBatch",
    "ScanResult",
    "merge_results",
]
