"""Domain Event definitions.

Represents significant occurrences in a job's lifecycle that other parts
of the system (logging, progress display, tests) might react to.
"""
