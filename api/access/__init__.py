"""
Authorization decisions for principals acting on resources.
"""
