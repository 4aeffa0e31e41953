"""daycycle: Start of Day / End of Day operation orchestrator."""

__version__ = "0.1.0"
