"""
Turn audio reconstruction package.

Design intent:
- Rebuild per-turn audio clips from a provider-side merged recording.
- Keep provider, storage and datastore adapters behind small interfaces.
- Report every session outcome as a typed result instead of raising.
"""
