"""Command-line interface for Shipwright."""
