"""Domain Layer: job types, value objects, errors, events and ports.

Nothing in this package performs I/O.
"""
