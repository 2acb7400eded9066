"""Authentication and credential lifecycle.

Learn: Two authentication paths resolve to one AuthContext:
1. Browsers → email/password or GitHub OAuth → signed session cookie
2. CI / scripts → API key in the x-api-key header

Both resolve to an org-scoped identity that route handlers consume through
the get_auth_context / require_auth dependencies.
"""
