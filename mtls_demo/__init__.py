"""
mTLS demo: a mutual-TLS server and client with certificate validation.
"""

__version__ = "1.0.0"
