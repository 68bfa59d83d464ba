"""Main entry point when executing bioqueue as a package.

This allows running the package using python -m bioqueue.
"""

from bioqueue.main import cli_entry_point

if __name__ == "__main__":
    cli_entry_point()
