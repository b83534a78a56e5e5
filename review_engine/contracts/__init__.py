"""
Contracts Module

Immutable record shapes, closed enums and the typed error hierarchy shared
by every layer of the review engine. Layers exchange these types only; no
layer may import implementation details from another layer.

DESIGN PRINCIPLES:
==================
1. All contract types are immutable (frozen dataclasses)
2. Every "kind" is a closed Enum, never a free string
3. Maps are stored as sorted tuples so records stay hashable
4. All timestamps use UTC and are never mutated
5. Hash-based identity for determinism and integrity verification
"""
