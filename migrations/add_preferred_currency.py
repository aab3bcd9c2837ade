#!/usr/bin/env python3
"""
Migration: Add preferred_currency column to users table.

Run this script once against databases created before users could pick the
currency their dashboard is valued in. Existing users get USD.
"""

import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from init_db import create_app
from models import db


def migrate():
    """Add the preferred_currency column to users table."""
    app = create_app()

    with app.app_context():
        print("Running migration: Add preferred_currency column...")

        is_sqlite = 'sqlite' in app.config['SQLALCHEMY_DATABASE_URI']

        try:
            if is_sqlite:
                db.session.execute(db.text('''
                    ALTER TABLE users ADD COLUMN preferred_currency VARCHAR(10) NOT NULL DEFAULT 'USD'
                '''))
            else:
                db.session.execute(db.text('''
                    ALTER TABLE users
                    ADD COLUMN IF NOT EXISTS preferred_currency VARCHAR(10) NOT NULL DEFAULT 'USD'
                '''))

            db.session.commit()
            print("Migration completed successfully!")
            print("Added column: preferred_currency")

        except Exception as e:
            if 'duplicate column' in str(e).lower() or 'already exists' in str(e).lower():
                print("Column already exists. Migration skipped.")
                db.session.rollback()
            else:
                print(f"Migration error: {e}")
                db.session.rollback()
                raise


if __name__ == '__main__':
    migrate()
