"""Ledger access for electronic-invoice documents using SQLAlchemy Core."""

from __future__ import annotations

from datetime import date
from typing import List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .errors import PersistenceError
from .logging import get_logger
from .models import LedgerDocument

logger = get_logger(__name__)

DUPLICATES_SQL = """
    SELECT
        d.id,
        d.identification_number,
        d.state_document_id,
        d.prefix,
        d.number,
        d.cufe,
        d.subtotal,
        d.total_tax,
        d.total,
        d.created_at
    FROM documents d
    WHERE d.identification_number = :owner
      AND d.state_document_id = :active_state
      AND d.created_at BETWEEN :window_start AND :window_end
      AND EXISTS (
          SELECT 1
          FROM documents x
          WHERE x.cufe = d.cufe
            AND x.identification_number = :owner
            AND x.state_document_id = :active_state
            AND x.created_at BETWEEN :window_start AND :window_end
            AND x.id <> d.id
      )
    ORDER BY d.cufe, d.created_at, d.id
"""


class LedgerDatabase:
    def __init__(self, dsn: str, active_state: int = 1, inactive_state: int = 0):
        self.engine: Engine = create_engine(_ensure_driver(dsn), future=True, pool_pre_ping=True)
        self.active_state = active_state
        self.inactive_state = inactive_state

    def dispose(self) -> None:
        self.engine.dispose()

    def find_duplicate_documents(
        self,
        owner: str,
        date_from: date,
        date_to: date,
        limit: Optional[int] = None,
    ) -> List[LedgerDocument]:
        """Active documents in the window whose CUFE is shared by another active document."""
        sql = DUPLICATES_SQL
        params = {
            "owner": owner,
            "active_state": self.active_state,
            "window_start": f"{date_from.isoformat()} 00:00:00",
            "window_end": f"{date_to.isoformat()} 23:59:59",
        }
        if limit:
            sql += "\n    LIMIT :limit"
            params["limit"] = int(limit)

        with self.engine.connect() as conn:
            rows = conn.execute(text(sql), params).mappings().all()

        return [
            LedgerDocument(
                id=row["id"],
                identification_number=str(row["identification_number"]),
                state_document_id=row["state_document_id"],
                prefix=row["prefix"],
                number=None if row["number"] is None else str(row["number"]),
                cufe=row["cufe"],
                subtotal=row["subtotal"],
                total_tax=row["total_tax"],
                total=row["total"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def deactivate(self, document_id: int) -> bool:
        """Flip the state flag to inactive. Returns False when it already was."""
        try:
            with self.engine.begin() as conn:
                current = conn.execute(
                    text("SELECT state_document_id FROM documents WHERE id = :id"),
                    {"id": document_id},
                ).scalar_one_or_none()
                if current is None:
                    raise PersistenceError(f"Document {document_id} does not exist", document_id)
                if current == self.inactive_state:
                    return False
                conn.execute(
                    text("UPDATE documents SET state_document_id = :state WHERE id = :id"),
                    {"state": self.inactive_state, "id": document_id},
                )
        except SQLAlchemyError as exc:
            logger.error("deactivate_failed", document_id=document_id, error=str(exc))
            raise PersistenceError(f"Could not deactivate document {document_id}: {exc}", document_id) from exc

        logger.info("document_deactivated", document_id=document_id)
        return True


def _ensure_driver(dsn: str) -> str:
    if dsn.startswith("postgresql://"):
        return dsn.replace("postgresql://", "postgresql+psycopg://", 1)
    if dsn.startswith("postgres://"):
        return dsn.replace("postgres://", "postgresql+psycopg://", 1)
    if dsn.startswith("mysql://"):
        return dsn.replace("mysql://", "mysql+pymysql://", 1)
    return dsn
