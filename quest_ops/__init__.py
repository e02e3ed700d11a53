"""Quest Ops: operations backend for the quest platform admin console."""

__version__ = "0.1.0"
