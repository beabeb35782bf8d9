"""Prometheus exporter for Bobcat miners."""

__version__ = "0.1.0"
