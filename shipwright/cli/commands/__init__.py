"""Shipwright CLI commands."""
