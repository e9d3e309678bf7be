"""Core utilities and shared infrastructure.

- config: Configuration loading and validation
- constants: Named constants, dataset URL template, column aliases
- exceptions: Custom exception hierarchy
- query_key: Canonical cache keys and entity tags for feed requests
"""
