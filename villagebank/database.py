import os
from pathlib import Path
from typing import Generator

from sqlmodel import Session, SQLModel, create_engine

from . import models  # noqa: F401

BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = Path(os.getenv("LEDGER_DATA_DIR") or BASE_DIR / "data")

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    DATABASE_URL = f"sqlite:///{DATA_DIR / 'villagebank.db'}"

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, connect_args=connect_args)


def init_db() -> None:
    """Create database tables if they do not exist."""
    SQLModel.metadata.create_all(engine)


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
