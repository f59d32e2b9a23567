"""
Rate limiting package for the Records service.

Holds the fixed-window limiter, one instance per policy class, and the
registry that applies several policies to a request and sweeps idle windows.
"""
