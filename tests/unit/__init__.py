"""
Unit tests for individual components.

This package contains unit tests for:
- Coordinate mapping, view transforms and annotation rendering
- Page rasterization and the detection backend client
- Result stores and persistence clients
- Detection sessions, canvas views and status monitoring
- Results queries and configuration
"""
