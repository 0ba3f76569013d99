"""auth/ -- Membership: users, password credentials, roles and sessions.

Layer rule: auth/ imports only from core/, stdlib and third-party libraries.
It does NOT import from api/, web/ or access/. Only auth/dependencies.py
touches FastAPI.
"""
