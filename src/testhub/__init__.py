"""TestHub: multi-tenant test-results tracking service.

This package holds the API's authentication and credential-lifecycle core:
sessions, API keys, single-use email tokens, rate limiting and GitHub OAuth.
"""

__version__ = "0.1.0"
