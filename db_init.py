# db_init.py
from pathlib import Path

from config import Config
from models import Base, make_engine, sqlite_file_dir


def init_db(db_url: str, exports_dir: str, echo: bool = False) -> None:
    """Create the invoice tables plus the SQLite and export directories they need."""
    # SQLite file location comes from the URL, not the working directory
    db_dir = sqlite_file_dir(db_url)
    if db_dir is not None:
        db_dir.mkdir(parents=True, exist_ok=True)

    # Bulk PDF exports land here
    Path(exports_dir).mkdir(parents=True, exist_ok=True)

    engine = make_engine(db_url, echo=echo)
    Base.metadata.create_all(engine)
    engine.dispose()


def main():
    init_db(Config.SQLALCHEMY_DATABASE_URI, Config.EXPORTS_DIR, echo=Config.SQLALCHEMY_ECHO)

    print("✅ Invoice database ready.")
    print(f"DB: {Config.SQLALCHEMY_DATABASE_URI}")
    print(f"Exports dir: {Config.EXPORTS_DIR}")


if __name__ == "__main__":
    main()
