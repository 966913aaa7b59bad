#!/usr/bin/env python3
"""Create the Servio database tables."""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from servio import create_app, models  # noqa: E402,F401
from servio.extensions import db  # noqa: E402


def init_database(drop: bool = False) -> None:
    app = create_app()
    with app.app_context():
        if drop:
            db.drop_all()
            print("Dropped existing tables")
        db.create_all()
        print(f"Database tables initialized at {app.config['SQLALCHEMY_DATABASE_URI']}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create database tables.")
    parser.add_argument("--drop", action="store_true", help="Drop all tables before creating them")
    init_database(parser.parse_args().drop)
