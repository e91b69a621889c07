"""Command line entry points for noodexx."""
