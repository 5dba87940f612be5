"""
PDF API - converts HTML to PDF files served from short-lived public links.
"""

__version__ = "0.1.0"
