#!/usr/bin/env python3
"""
Create or promote an admin account for the bicycle borrowing portal.
Usage:
  python create_admin.py --email admin@example.edu --password secret

This script must be run from the project root and will use the app's SQLAlchemy
configuration. It creates the user if missing, sets role=admin and sets the
password hash to the provided password.
"""
import argparse
import sys

from werkzeug.security import generate_password_hash

# Import application factory
from app import create_app
from models import db, User


def main(argv=None):
    parser = argparse.ArgumentParser(description='Create or promote an admin user')
    parser.add_argument('--email', '-e', required=True, help='admin email')
    parser.add_argument('--password', '-p', required=True, help='admin password')
    parser.add_argument('--full-name', default='Administrator', help='display name for a new account')
    parser.add_argument('--db-uri', help='optional DB URI to override app config')
    args = parser.parse_args(argv)

    config = {}
    if args.db_uri:
        config['SQLALCHEMY_DATABASE_URI'] = args.db_uri

    app = create_app(config)
    email = args.email.strip().lower()
    with app.app_context():
        db.create_all()
        user = User.query.filter_by(email=email).first()
        if not user:
            user = User(
                email=email,
                password_hash=generate_password_hash(args.password),
                full_name=args.full_name,
                role='admin',
            )
            db.session.add(user)
            db.session.commit()
            print(f"Created new admin user: {email}")
            return 0
        user.password_hash = generate_password_hash(args.password)
        user.role = 'admin'
        db.session.commit()
        print(f"Updated existing user '{email}' to admin and set new password")
        return 0


if __name__ == '__main__':
    try:
        sys.exit(main())
    except Exception as e:
        print('Error:', e)
        sys.exit(1)
