"""updateguard: update safety and recovery for an embedded SQLite database."""

__version__ = "0.1.0"
