"""Prometheus exporter for the age of marker files.

This package watches a start file and an end file written by an external
batch process and exports run count, running state, duration and age metrics
together with health and liveness probes derived from the end file's mtime.
"""

__version__ = "0.1.0"
