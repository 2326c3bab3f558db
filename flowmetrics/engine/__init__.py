"""
Calculation core of the flow metrics engine.

- aggregation: date bucketing by day, week, month, quarter and year
- filters: per-request query filter context
- statistics: spreadsheet-compatible percentiles and variability
- trend_analysis: period over period comparison
- cache: request-scoped memoization of collaborator queries
- calculations: per-widget engines
"""

from .cache import CacheKey, MemoCache
from .filters import QueryFilters

__all__ = ["CacheKey", "MemoCache", "QueryFilters"]
