"""Scanwatch - scan scheduling and execution-resource management."""

__app_name__ = "scanwatch"
__version__ = "0.1.0"
