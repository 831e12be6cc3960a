"""Task model, in-memory store and execution engine.

The store is the single authoritative table; the engine drives every state
transition through it and the scheduler reacts to the snapshots it publishes.
"""
