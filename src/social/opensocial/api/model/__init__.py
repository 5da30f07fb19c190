"""
Database Models

This package defines the database models for the OpenSocial API using SQLAlchemy ORM.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- auth.py: In-flight OAuth state and established OAuth sessions
- apps.py: Registered third-party apps and their API credentials

The OAuth tables store opaque serialized payloads keyed by a string. Only the OAuth client
in social.opensocial.api.atproto.oauth knows their structure. Writes to both tables are
upserts so that repeated logins and token refreshes replace the previous row.
"""
