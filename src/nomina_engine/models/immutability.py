"""ORM-level write-once enforcement.

Stamped fiscal artifacts and payroll snapshots are protected by mapper
``before_update`` listeners. Services never rely on these listeners for
their business rules; they are the storage-level backstop.
"""

from __future__ import annotations

import logging

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from nomina_engine.models.fiscal import FiscalDocument
from nomina_engine.models.payroll import PayrollDetail, PayrollDetailLine

logger = logging.getLogger(__name__)

# Columns frozen once a document has been stamped.
STAMPED_FIELDS = ("xml_original", "xml_stamped", "uuid", "stamped_at", "sat_certificate_number")

# Columns a detail may still change after creation (superseding only).
DETAIL_MUTABLE_FIELDS = {"is_current", "superseded_at"}


class ImmutableDocumentError(Exception):
    """Raised when a write-once record is modified."""

    def __init__(self, entity: str, entity_id: object, field: str, reason: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        self.field = field
        msg = f"{entity} {entity_id} is immutable: cannot modify '{field}'"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


def _previous_status(target: FiscalDocument) -> str | None:
    history = get_history(target, "status")
    if history.deleted:
        return history.deleted[0]
    if history.unchanged:
        return history.unchanged[0]
    return None


def _check_fiscal_document(mapper, connection, target: FiscalDocument) -> None:
    previous = _previous_status(target)
    if previous not in ("STAMPED", "CANCELLED"):
        return

    if previous == "CANCELLED":
        status_history = get_history(target, "status")
        if status_history.added and status_history.added[0] != "CANCELLED":
            raise ImmutableDocumentError(
                "FiscalDocument", target.document_id, "status", "cancellation is terminal"
            )

    for field in STAMPED_FIELDS:
        if get_history(target, field).has_changes():
            logger.error(
                "Blocked modification of stamped document %s field %s", target.document_id, field
            )
            raise ImmutableDocumentError(
                "FiscalDocument", target.document_id, field, f"document was {previous}"
            )


def _check_payroll_detail(mapper, connection, target: PayrollDetail) -> None:
    for attr in mapper.column_attrs:
        if attr.key in DETAIL_MUTABLE_FIELDS:
            continue
        if get_history(target, attr.key).has_changes():
            raise ImmutableDocumentError(
                "PayrollDetail", target.detail_id, attr.key, "supersede it with a new version"
            )


def _check_payroll_detail_line(mapper, connection, target: PayrollDetailLine) -> None:
    for attr in mapper.column_attrs:
        if get_history(target, attr.key).has_changes():
            raise ImmutableDocumentError("PayrollDetailLine", target.line_id, attr.key)


def register_immutability_listeners() -> None:
    """Install the listeners (idempotent)."""
    for model, listener in (
        (FiscalDocument, _check_fiscal_document),
        (PayrollDetail, _check_payroll_detail),
        (PayrollDetailLine, _check_payroll_detail_line),
    ):
        if not event.contains(model, "before_update", listener):
            event.listen(model, "before_update", listener)

