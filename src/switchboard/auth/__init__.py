"""Authentication and staff authorization.

Learn: Identity is delegated. An IdentityProvider answers "who is this
caller?" (email/password or a bearer token) and returns a Principal. The
dashboard then checks that the principal is a recognized staff agent —
authenticated-but-not-staff is AuthorizationDenied and forces a logout.
"""
