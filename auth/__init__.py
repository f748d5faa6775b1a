"""auth/ -- Authentication and access-control core for Warden.

Layer rule: auth/ imports stdlib, third-party libraries, core/config and
kvstore/. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
