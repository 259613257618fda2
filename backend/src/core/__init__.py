"""
Application settings and structured logging setup.
"""
