#!/usr/bin/env python3
"""
Database initialization script for Wealth Tracker.
Run this script to create all database tables.

Usage:
    python init_db.py

Make sure DATABASE_URL environment variable is set.
"""

from flask import Flask

from app import database_url_from_env
from models import db


def create_app():
    """Create a bare Flask app bound to the configured database."""
    app = Flask(__name__)
    app.config['SQLALCHEMY_DATABASE_URI'] = database_url_from_env()
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

    db.init_app(app)

    return app


def init_database():
    """Initialize the database by creating all tables."""
    app = create_app()

    with app.app_context():
        print("Connecting to database...")
        print(f"Database URI: {app.config['SQLALCHEMY_DATABASE_URI'][:50]}...")

        db.create_all()

        print("Database tables created successfully!")
        print("\nTables created:")
        for table in db.metadata.sorted_tables:
            print(f"  - {table.name}")


if __name__ == '__main__':
    init_database()
