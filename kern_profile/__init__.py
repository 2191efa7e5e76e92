"""
kern-profile: fold kernel CPU samples and allocator traces into flame graphs.
"""

__version__ = "0.1.0"
