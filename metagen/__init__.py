"""
Image SEO Metadata Pipeline

Batch image processing that generates titles, descriptions and keywords with an
AI backend, metered by a per-user token ledger.
"""

__version__ = "1.0.0"
__author__ = "Metagen Team"
