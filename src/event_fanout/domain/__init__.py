"""Domain layer — immutable events and the handler capability.

This package defines the primitives that the routing layer and every
handler depend on but never modify.
"""
