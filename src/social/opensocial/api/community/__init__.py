"""
Community Records

Typed views of the community.opensocial.* records and the reconciliation of a user's
membership claims against the confirmations each community publishes.

Key Components:
- records.py: Record models validated at the network boundary
- membership.py: Membership reconciliation for the signed-in user
"""
