"""Small shared utilities: devices, IO/logging, pytrees, checkpoint paths."""
