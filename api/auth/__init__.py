"""
Authentication: principals, credentials and session tokens.
"""
