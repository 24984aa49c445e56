"""Forward-only SQL migrations, applied in filename order by migrate.py."""
