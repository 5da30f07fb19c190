"""
AT Protocol Integration

This package provides the OAuth client and the XRPC access the OpenSocial API uses to act on
behalf of signed-in users.

Key Components:
- oauth.py: OAuth flows including PAR, authorization code exchange, refresh and revocation
- store.py: Persistence of in-flight OAuth state and established OAuth sessions
- chain.py: Middleware chain for outbound requests (DPoP, client assertions, metrics)
- jwt.py: PKCE, DPoP proof and client assertion helpers
- pds.py: Authorization server discovery for a PDS
- xrpc.py: Authenticated XRPC queries and public record reads
- profile.py: Profile reads for the signed-in user

The authentication flow follows these steps:
1. Initialize OAuth flow with a subject (handle, DID or service URL)
2. Push the authorization request and redirect to the authorization server
3. Complete the OAuth flow with the authorization code and store the credential
4. Restore the credential on later requests, refreshing it close to expiry
"""
