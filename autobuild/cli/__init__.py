"""CLI module for autobuild."""
