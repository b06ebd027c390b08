"""
Guild Stats Engine
Discord event ingestion and time-windowed statistics aggregation
"""

__version__ = '0.1.0'
