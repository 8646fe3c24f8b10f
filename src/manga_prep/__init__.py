"""
manga-prep package.

Why this file exists:
- It marks this folder as a package so `python -m manga_prep` works after install.
- It keeps import side effects minimal; the CLI lives in cli.py.
"""

__all__ = ["__version__"]

# Recorded in run manifests.
__version__ = "0.3.0"
