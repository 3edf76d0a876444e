"""Shared libraries for the segmentation engine.

This package contains reusable components:
- common: Configuration
- caching: Redis client management and the segmentation cache
"""
