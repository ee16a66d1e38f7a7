"""Database initialization helper.

Creates the configured database (tables plus the default scanner mode row)
and emits SQL DDL into ``database/schema.sql``.

Copyright (c) Bryn Gwalad 2025
"""

from __future__ import annotations
import sys
from pathlib import Path

# Ensure project root is on sys.path so `import scanstock` works when
# running this script directly (python database/init_db.py).
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from sqlmodel import SQLModel
from sqlalchemy.schema import CreateTable
from dotenv import load_dotenv

# Load environment variables from .env (so this script honors .env settings)
load_dotenv()

# Import after adjusting sys.path and loading env; the models register
# themselves on SQLModel metadata.
from scanstock import database


def main() -> None:
    """Create the database and emit SQL DDL.

    The store location comes from ``DATABASE_URL`` or ``SQLITE_FILE``.
    """

    print(f"Using database URL: {database.engine.url.render_as_string(hide_password=True)}")

    print("Creating tables...")
    database.init_db()
    print("Tables created.")
    print(f"Scanner mode: {database.get_scanner_mode().model_dump(mode='json')}")

    # emit SQL DDL to file
    schema_path = ROOT / "database" / "schema.sql"
    print(f"Writing SQL DDL to {schema_path}")
    with open(schema_path, "w", encoding="utf-8") as f:
        for table in SQLModel.metadata.sorted_tables:
            ddl = str(CreateTable(table).compile(database.engine))
            f.write(ddl)
            f.write(";\n\n")

    print("Done.\n")


if __name__ == "__main__":
    main()
