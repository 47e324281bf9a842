"""File-based coordination core for cooperating agent processes on one host."""

__version__ = "0.1.0"
