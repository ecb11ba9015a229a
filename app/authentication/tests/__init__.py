"""
Tests for authentication app.

    pytest authentication/tests/
"""
