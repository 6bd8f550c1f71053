"""
pytest bootstrap for the flat backend layout.

Modules import each other as top-level names (database, updates.*, jobs.*),
so backend/ has to be importable before any test module is collected.
"""
import os
import sys

BACKEND_DIR = os.path.dirname(os.path.abspath(__file__))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)
