"""
Field compatibility filtering and round-trip validation.

NOTE: round_trip_validator depends on the processing package, which itself
imports field_filter. Import RoundTripValidator from its module directly.
"""

from .field_filter import FieldCompatibilityFilter, load_ruleset

__all__ = ['FieldCompatibilityFilter', 'load_ruleset']
