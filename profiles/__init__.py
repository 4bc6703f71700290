"""profiles/ -- Per-user viewing profiles and the active-profile pointer.

Layer rule: profiles/ may import from auth/ and core/, never from api/.
"""
