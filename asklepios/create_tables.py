# asklepios/create_tables.py
from pathlib import Path

from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parent / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH)

from asklepios.models import init_db  # noqa: E402

if __name__ == "__main__":
    print("Creating tables...")
    init_db()
    print("Tables created.")
