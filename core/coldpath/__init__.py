"""
Cold-path metrics pipeline: rotated buffer files -> partitioned object
storage -> hourly/daily rollups -> quality checks.
"""

__version__ = "0.1.0"
