"""
Core infrastructure: settings, logging, database engines, errors, metrics,
connectivity and scheduling.
"""
