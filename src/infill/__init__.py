"""Infill: fill-in-middle completion pipeline for local inference servers."""

__version__ = "0.1.0"
