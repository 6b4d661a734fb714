"""Equation plotter with OCR input and a persistent query history."""

__version__ = "0.1.0"
