"""auth/ -- Authentication and authorization package for Molunzaka.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or profiles/.
api/ and profiles/ import from auth/, not the other way around.
"""
