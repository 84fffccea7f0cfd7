"""auth/ -- Identity, login and session package for terminalpub.

Layer rule: auth/ imports from core/, federation/ and (session.py only)
cache/. It does NOT import from api/ or web/. api/ and web/ import from
auth/, not the other way around.
"""
