from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from quotepolicy.core.errors import StoreWriteError


def build_upsert(session: AsyncSession, target: Any, values: dict[str, Any], *, index_elements: list[str]) -> Any:
    # Single-statement overwrite keyed by index_elements; retries with the same payload are no-ops.
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(target).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(target).values(**values)
    else:
        raise StoreWriteError(f"upsert not supported for dialect {dialect}")
    update_values = {name: stmt.excluded[name] for name in values if name not in index_elements}
    return stmt.on_conflict_do_update(index_elements=index_elements, set_=update_values)
