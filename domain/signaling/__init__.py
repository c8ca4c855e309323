"""Signaling domain: envelopes, identity registry and peer sessions."""
