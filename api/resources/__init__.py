"""
Generic tenant-scoped resources (repository, service, HTTP router).
"""
