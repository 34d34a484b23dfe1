"""
AdminKit tasks.

Each module wraps one administrative concern and exposes a Job that the
CLI runs through the session.
"""
