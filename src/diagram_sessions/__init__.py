"""diagram-sessions: conversation and diagram-version persistence for a diagram chat editor."""

__version__ = "0.1.0"
