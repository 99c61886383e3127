"""HTTP transport for Shipwright."""
