"""Ralph runner: drive an autonomous coding agent through a queue of work items."""

__version__ = "0.4.0"
