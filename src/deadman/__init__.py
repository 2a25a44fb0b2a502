"""Dead Man's Switch: deliver messages when their owner stops checking in."""

__version__ = "0.1.0"
