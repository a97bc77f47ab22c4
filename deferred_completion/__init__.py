"""Deferred AI completions: submit now, process out-of-band, poll for the result."""

__version__ = "0.1.0"
