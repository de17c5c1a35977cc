"""
Client side of the encrypted chat: issuer/directory API client, key cache,
relay transport and the session orchestrator.
"""
