"""Authentication module (JWT bearer tokens).

Services:
    - TokenVerifier: Resolves SafeLease access tokens to user IDs.
    - get_current_user_id: FastAPI dependency for HTTP routes.
"""
