"""
Tax Practice Operations
Blueprint registry.
"""
