"""
Continuous Clearing Auction indexer: log ingestion, decoding and auction reconstruction.
"""

__version__ = "1.0.0"
