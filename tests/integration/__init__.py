"""
Integration Tests for metagrowth
================================

End-to-end meta-model workflows: configuration loading, fitting,
persistence and exports.
"""
