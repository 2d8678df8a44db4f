"""
Shared infrastructure: base models, errors, logging, caching and the DRF
glue (authentication and permission classes) used by every app.
"""
