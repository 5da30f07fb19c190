"""
Identity Resolution

This package resolves AT Protocol identifiers (DIDs, handles) to their canonical forms.

Resolution Types:
1. Handle Resolution
   - DNS-based resolution via TXT records (_atproto.{handle})
   - HTTP-based resolution via well-known endpoints (.well-known/atproto-did)

2. DID Resolution
   - did:plc method resolution via the PLC directory
   - did:web method resolution via well-known endpoints

Login input may also be a service URL (a PDS or entryway). Service URLs are not resolved;
the authorization server is discovered from them directly.
"""
