"""Exceptions shared across services.

Domain-specific errors live next to the code that raises them; only the
conditions every service can hit are defined here.
"""

from __future__ import annotations


class NotFoundError(Exception):
    """Record does not exist or is outside the caller's scope."""

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")
