"""
List requests: parsing, validation and SQL rendering.
"""
