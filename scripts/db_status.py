"""Print Identity Store connectivity and table presence (exit 1 on problems)."""
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from sqlalchemy import text

from portal.core.config import _get
from portal.db import build_engine, is_postgres

TABLES = ("users", "subscriptions", "configuration", "terms_acceptances", "processed_webhook_events")


def main() -> int:
    engine = build_engine((_get("DATABASE_URL", "sqlite:///data/portal.db") or "").strip())
    print("dialect:", engine.dialect.name)
    ok = True
    with engine.begin() as conn:
        try:
            conn.execute(text("SELECT 1"))
            print("db: ok")
        except Exception as e:
            print("db error:", e)
            return 1
        for table in TABLES:
            if is_postgres(engine):
                found = conn.execute(text("SELECT to_regclass(:t)"), {"t": f"public.{table}"}).scalar()
            else:
                found = conn.execute(
                    text("SELECT name FROM sqlite_master WHERE type='table' AND name=:t"), {"t": table}
                ).scalar()
            count = conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar() if found else None
            print(f"{table}: {'present' if found else 'MISSING'}" + (f" rows={count}" if found else ""))
            ok = ok and bool(found)
    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
