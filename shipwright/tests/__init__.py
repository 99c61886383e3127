"""Tests for Shipwright."""
