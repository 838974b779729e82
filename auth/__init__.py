"""auth/ -- Authentication and authorization package for the Tetris API.

Layer rule: auth/ imports stdlib, third-party libraries and core.config.
It does NOT import from api/. api/ imports from auth/, not the other way
around. Only auth/dependencies.py knows about FastAPI.
"""
