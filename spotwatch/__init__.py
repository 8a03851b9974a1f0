"""
spotwatch: incremental crawl -> normalize -> diff -> extract -> materialize
pipeline for venue promotion listings.
"""

__version__ = "0.1.0"
