"""
INSERT ... ON CONFLICT DO UPDATE selon le dialecte de la session
(PostgreSQL en production, SQLite en tests/dev)
"""
from typing import Any, Dict, Iterable, List, Sequence

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


def dialect_insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


def upsert_rows(
    db: Session,
    model,
    rows: List[Dict[str, Any]],
    index_elements: Sequence[str],
    exclude_from_update: Iterable[str] = ("id", "created_at"),
) -> None:
    """
    Upsert idempotent d'un batch de lignes (clé = index_elements)
    Ne commit pas : l'appelant décide de la frontière de transaction
    """
    if not rows:
        return

    stmt = dialect_insert(db, model).values(rows)
    skip = set(index_elements) | set(exclude_from_update)
    set_ = {col: stmt.excluded[col] for col in rows[0] if col not in skip}
    if hasattr(model, "updated_at"):
        set_["updated_at"] = func.now()

    stmt = stmt.on_conflict_do_update(index_elements=list(index_elements), set_=set_)
    db.execute(stmt)
