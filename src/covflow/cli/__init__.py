"""
covflow CLI tools.

This package contains the ``covflow`` command line:
- run / parallel: collect coverage of scripts
- merge / summary: combine and inspect coverage data files
- analyze: show the static line classification of a file
"""

from .main import main

__all__ = ["main"]
