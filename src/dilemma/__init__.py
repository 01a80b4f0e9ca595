"""
Dilemma scheduler - publishes the daily dilemma and reveals its results on time.
"""

__version__ = "1.0.0"
