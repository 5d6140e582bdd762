"""Thigh CSA Analyst test suite.

Quick commands:
    pytest tests -v                         # Everything
    pytest tests/test_region_growing.py     # One component
"""
