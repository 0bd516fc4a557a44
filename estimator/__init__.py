"""Inspection document to priced repair estimate worker."""

__version__ = "0.1.0"
