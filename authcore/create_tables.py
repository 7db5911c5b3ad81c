"""Utility to create database tables without running migrations."""

from sqlalchemy.engine import Engine

from .config import get_settings
from .database import make_engine
from .models import Base


def create_tables(engine: Engine) -> None:
    """Create all database tables using the SQLAlchemy metadata."""
    Base.metadata.create_all(bind=engine)


if __name__ == "__main__":
    create_tables(make_engine(get_settings()))
