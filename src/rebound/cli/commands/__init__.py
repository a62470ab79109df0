# rebound/cli/commands: Command modules for the Rebound CLI.
#
# Each module in this package provides one or more CLI commands.

from .inspect import categories, classify, decide
from .stats import stats
from .validate import validate

__all__ = [
    # inspect.py
    "categories",
    "classify",
    "decide",
    # stats.py
    "stats",
    # validate.py
    "validate",
]
