"""
Flood overlay engine for drainage network simulation results.
"""

__version__ = "0.1.0"
