"""
pageant_engine
Multi-level score certification and tabulation engine.
"""

__version__ = "1.0.0"
