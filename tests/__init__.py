"""
metagrowth Test Suite
=====================

Test Categories:
- Unit Tests: growth models, parameter specifications, stratification,
  likelihood, sampler, diagnostics, configuration, persistence
- Integration Tests: end-to-end fits of synthetic simulator output
"""
