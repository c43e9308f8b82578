"""Ingestion harness for podcast archive sites."""

__version__ = "0.1.0"
