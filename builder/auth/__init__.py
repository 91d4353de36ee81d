"""
Authentication core for the builder.

Design goals:
- Named strategies (OAuth providers, commerce password grant, workstation PKCE, dev secret).
- Two isolated registries: end-user login vs. per-project builder access.
- Cookie-based sessions (HttpOnly, SameSite=Lax), one signed cookie per store.
- Cross-origin cookie stripping on every request before any session is read.
"""
