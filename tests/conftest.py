import os

# Keep module-level engine creation off the on-disk database.
os.environ.setdefault("LEDGER_DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("LEDGER_TIMEZONE", "Europe/Berlin")
