import argparse
import os
import sqlite3
from pathlib import Path
from typing import Optional


def resolve_db_path(override: Optional[str]) -> Path:
    if override:
        return Path(override).expanduser().resolve()
    env_path = os.getenv("DB_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return Path("/var/data/response_control.db").resolve()


def fetch_rows(conn: sqlite3.Connection, user_id: int, topics: list[str]) -> list[tuple]:
    sql = (
        "SELECT topic, mention_count, total_chars_exchanged, last_deep_dive_at "
        "FROM topic_contexts WHERE user_id = ?"
    )
    params: list[object] = [user_id]
    if topics:
        sql += f" AND topic IN ({','.join('?' for _ in topics)})"
        params.extend(topics)
    sql += " ORDER BY mention_count DESC, topic ASC"
    return conn.execute(sql, params).fetchall()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Show per-user topic expertise rows in the response-control SQLite DB (read-only)."
    )
    parser.add_argument("--user-id", type=int, required=True, help="User id whose topic rows to inspect.")
    parser.add_argument(
        "--topic",
        action="append",
        default=[],
        help="Restrict to this topic (repeatable). Defaults to all topics.",
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help="Override SQLite DB path. Defaults to DB_PATH env or app default.",
    )
    args = parser.parse_args()

    db_path = resolve_db_path(args.db_path)
    if not db_path.exists():
        print(f"DB not found: {db_path}")
        return 1

    topics = [t.strip() for t in args.topic if t.strip()]
    conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
    try:
        rows = fetch_rows(conn, args.user_id, topics)
    finally:
        conn.close()
    print(f"Target DB: {db_path}")
    print(f"Matched topics: {len(rows)}")
    for topic, mentions, chars, deep_dive_at in rows:
        print(f"  {topic}: mentions={mentions} chars={chars} last_deep_dive_at={deep_dive_at or '-'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
