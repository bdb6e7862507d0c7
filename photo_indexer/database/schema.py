"""
Database schema definitions.
"""
import sqlite3
import logging

CURRENT_SCHEMA_VERSION = 1

def init_schema(conn: sqlite3.Connection):
    """
    Applies the catalog schema to the database.
    Idempotent: safe to run on every startup.
    """
    with conn:
        # 1. Version Tracking (For future migrations)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
        """)

        cur = conn.cursor()
        cur.execute("SELECT version FROM schema_version")
        if not cur.fetchone():
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (CURRENT_SCHEMA_VERSION,))

        # 2. Media records, one row per absolute path
        conn.execute("""
        CREATE TABLE IF NOT EXISTS images (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            filepath        TEXT UNIQUE NOT NULL,
            filename        TEXT NOT NULL,
            extension       TEXT NOT NULL,
            size            INTEGER DEFAULT 0,
            width           INTEGER DEFAULT 0,
            height          INTEGER DEFAULT 0,
            created         INTEGER DEFAULT 0,
            modified        INTEGER DEFAULT 0,
            thumbnail_path  TEXT DEFAULT '',
            exif_json       TEXT DEFAULT '{}',
            folder          TEXT NOT NULL,
            indexed_at      INTEGER DEFAULT 0
        );
        """)

        # 3. Indices for the query/sort columns
        conn.execute("CREATE INDEX IF NOT EXISTS idx_images_folder ON images(folder);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_images_modified ON images(modified);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_images_created ON images(created);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_images_extension ON images(extension);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_images_filename ON images(filename);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_images_size ON images(size);")

    logging.debug("Database schema initialized.")
