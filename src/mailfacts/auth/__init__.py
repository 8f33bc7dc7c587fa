"""Credential handling: token vault and Google OAuth refresh.

Usage:
    from mailfacts.auth import CredentialVault, GoogleOAuthClient

    vault = CredentialVault.from_env()
    oauth = GoogleOAuthClient(client_id=config.google.client_id)
"""

from mailfacts.auth.google_oauth import GoogleOAuthClient, TokenGrant
from mailfacts.auth.vault import CredentialVault

__all__ = ["CredentialVault", "GoogleOAuthClient", "TokenGrant"]
