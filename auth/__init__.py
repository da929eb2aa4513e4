"""auth/ -- Authentication security and authorization package for PawnDesk.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ (config)
and cache/ (counter store). It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
