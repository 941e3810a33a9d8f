"""
Core modules for CarBot metering.

This package contains the tier catalog, entitlement resolution, limit and
feature checks, usage recording, rate limiting, concurrency capping and
usage warnings.
"""
