"""Changelog processing: normalization of remote change events into history records."""

from jirasync.processing.changelog_normalizer import (
    ChangelogNormalizer,
    NormalizationResult,
    extract_field_changes,
    group_by_change_type,
    summarize_changes,
)

__all__ = [
    "ChangelogNormalizer",
    "NormalizationResult",
    "extract_field_changes",
    "group_by_change_type",
    "summarize_changes",
]
