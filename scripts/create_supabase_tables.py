"""Script de création des tables nécessaires sur la base Supabase.

Les tables sont décrites par les modèles SQLAlchemy de ``src/models.py`` et
compilées en DDL PostgreSQL, puis exécutées avec psycopg2 avec les
politiques de sécurité au niveau des lignes (RLS). La variable
d'environnement `SUPABASE_DB_URL` doit contenir la chaîne de connexion
complète vers la base.

Utilisation::

    export SUPABASE_DB_URL="postgresql://..."  # clé service role
    python scripts/create_supabase_tables.py
"""

from __future__ import annotations

import os
import sys

import psycopg2
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateIndex, CreateTable

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

from models import Base  # noqa: E402

OWNER_POLICIES = """
alter table {table} enable row level security;
drop policy if exists "{table}_owner" on {table};
create policy "{table}_owner" on {table}
    for all using (auth.uid() = user_id) with check (auth.uid() = user_id);
"""


def table_statements() -> list[str]:
    """Return the DDL for every model, safe to replay."""

    dialect = postgresql.dialect()
    statements = []
    for table in Base.metadata.sorted_tables:
        statements.append(str(CreateTable(table, if_not_exists=True).compile(dialect=dialect)))
        for index in table.indexes:
            statements.append(
                str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect))
            )
        statements.append(OWNER_POLICIES.format(table=table.name))
    return statements


def main() -> None:
    db_url = os.getenv("SUPABASE_DB_URL")
    if not db_url:
        raise RuntimeError("SUPABASE_DB_URL non définie")
    conn = psycopg2.connect(db_url)
    try:
        with conn, conn.cursor() as cur:
            for statement in table_statements():
                cur.execute(statement)
    finally:
        conn.close()


if __name__ == "__main__":
    main()
