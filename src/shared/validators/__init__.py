"""Shared validators package for the application.

This package contains reusable validation functions that can be used
across different features and schemas.

Available validators:
- redirect_uri.py: OAuth client redirect URI validation
"""
