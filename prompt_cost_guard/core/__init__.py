"""
Core modules for Prompt Cost Guard.

This package contains template management, variable resolution and
rendering, and the cost controls around prompt execution: caching,
deduplication, batching, quotas and optimization reporting.
"""
