"""
Request/response clients for third-party services: block explorer, price and metadata APIs.
"""
