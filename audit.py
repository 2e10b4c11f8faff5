#!/usr/bin/env python3
"""
Operator tooling for availability and clearance drift.
Usage:
  python audit.py detect
  python audit.py report
  python audit.py repair-orphans
  python audit.py resync [--user-id 12]

Runs against the app's configured database, same as create_admin.py.
"""
import argparse
import json
import sys

from app import create_app
from services.auditor import ConsistencyAuditor
from services.certificates import CertificateService
from services.errors import ServiceError


def main(argv=None):
    parser = argparse.ArgumentParser(description='Detect and repair data drift')
    parser.add_argument('--db-uri', help='optional DB URI to override app config')
    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('detect', help='compare unavailable bicycles with outstanding borrowings')
    sub.add_parser('report', help='list orphan bicycles and stale availability flags')
    sub.add_parser('repair-orphans', help='create borrowings for orphan bicycles')
    resync = sub.add_parser('resync', help='re-derive users\' medical certificate status')
    resync.add_argument('--user-id', type=int, help='only resync this user')
    args = parser.parse_args(argv)

    config = {}
    if args.db_uri:
        config['SQLALCHEMY_DATABASE_URI'] = args.db_uri

    app = create_app(config)
    auditor = ConsistencyAuditor()
    with app.app_context():
        if args.command == 'detect':
            issue = auditor.detect()
            print(issue.details if issue else 'No inconsistency detected')
            return 1 if issue else 0
        if args.command == 'report':
            report = auditor.report()
            print(json.dumps(report.to_dict(), indent=2))
            return 0 if report.consistent else 1
        if args.command == 'repair-orphans':
            outcomes = auditor.repair_orphans()
            for outcome in outcomes:
                print(f"bicycle {outcome.bicycle_id}: {outcome.status} - {outcome.message}")
            return 1 if any(o.status == 'error' for o in outcomes) else 0
        result = CertificateService().bulk_resync(args.user_id)
        print(result.to_dict()['message'])
        return 0


if __name__ == '__main__':
    try:
        sys.exit(main())
    except ServiceError as e:
        print('Error:', e.message)
        sys.exit(1)
