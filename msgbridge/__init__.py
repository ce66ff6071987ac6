"""msgbridge - synchronizes messaging sessions with a helpdesk inbox."""

__version__ = "1.0.0"
