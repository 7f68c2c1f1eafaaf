"""auth/ -- Session lifecycle engine for SitePass.

Login, refresh rotation with reuse detection, logout, logout-all, lockout and
adaptive rate limiting. SessionService (auth/sessions.py) is the entry point.

Layer rule: auth/ imports stdlib, third-party libraries and core/ only.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
