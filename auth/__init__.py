"""auth/ -- Authentication and session package for Folio.

Layer rule: auth/ imports stdlib, third-party libraries, core.config and the
expiring store in cache/. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
