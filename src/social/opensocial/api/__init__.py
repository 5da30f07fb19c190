"""
OpenSocial API - backend-for-frontend for community apps on the AT Protocol

This package implements the backend that third-party community apps talk to. It registers
apps, signs end users in through AT Protocol OAuth, keeps the resulting identity in an
encrypted browser session cookie, and reads community membership data through the
identity network on the user's behalf.

Key Components:
- app: Web application layer with request handlers, middleware and configuration
- atproto: AT Protocol OAuth client, credential storage and XRPC access
- community: Typed community records and membership reconciliation
- model: Database models for OAuth state, OAuth sessions and registered apps
- resolve: Identity resolution utilities for AT Protocol DIDs and handles

Architecture Overview:
1. Authentication Flow:
   - The browser posts a handle, DID or service URL to /login
   - The service pushes an authorization request and redirects the browser
   - The callback exchanges the code, stores the credential keyed by DID and
     writes the DID into the session cookie

2. Request Flow:
   - The session cookie yields a DID
   - The stored credential is restored (and refreshed when close to expiry)
   - The credential is used to read profile and record data from the user's PDS

3. Membership Reconciliation:
   - Membership claims come from the user's repository
   - Membership confirmations come from each community's repository
   - A claim is active when a confirmation points back at it
"""
