"""
Test Data Factories for metagrowth
==================================

Data factories and generators for creating realistic test datasets:
- Synthetic simulator output with known growth-curve parameters
- Parameter records starting at the ground truth
"""
