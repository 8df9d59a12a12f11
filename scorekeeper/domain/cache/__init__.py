"""
Cache Domain Module

Value objects, entities, domain change events, invalidation rules and
repository interfaces for the client-side cache layer.
"""
