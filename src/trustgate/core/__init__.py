"""
TrustGate core: configuration, logging, clock, key-value store and encryption.
"""
