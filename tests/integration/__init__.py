"""
Integration tests for system components.

This package contains integration tests for:
- The review dashboard web application end to end
- The command line detect mode
"""
