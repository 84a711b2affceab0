"""Alta idempotente de la cuenta administradora.

Se ejecuta de forma explícita por un operador (nunca al arrancar la API):

    fmcarer-seed-admin --email admin@example.com --password ...
"""

import argparse
import logging
import os
import sys
from sqlmodel import select
from config import Settings, configure_logging, get_settings
from database import Database
from models import Account, Role
from security import hash_password

logger = logging.getLogger(__name__)

# seed_admin: Crea el admin si ningún usuario tiene ese email; retorna (cuenta, creada).
def seed_admin(db: Database, email: str, password: str, fullname: str = 'Administrator'):
    email = email.strip().lower()
    with db.session() as s:
        existing = s.exec(select(Account).where(Account.email == email)).first()
        if existing:
            if existing.role != Role.admin:
                raise ValueError(f"Email {email} already belongs to a non-admin account.")
            logger.info("ADMIN_SEED_SKIPPED", extra={"account_id": existing.id})
            return existing, False
        admin = Account(role=Role.admin, email=email, password_hash=hash_password(password),
                        fullname=fullname, is_verified=True)
        s.add(admin)
        s.commit()
        s.refresh(admin)
        logger.info("ADMIN_SEEDED", extra={"account_id": admin.id})
        return admin, True


def main(argv=None, settings: Settings = None) -> int:
    parser = argparse.ArgumentParser(description="Create the administrator account if it does not exist.")
    parser.add_argument('--email', default=os.getenv('ADMIN_EMAIL'), help="admin email (or ADMIN_EMAIL)")
    parser.add_argument('--password', default=os.getenv('ADMIN_PASSWORD'), help="admin password (or ADMIN_PASSWORD)")
    parser.add_argument('--fullname', default='Administrator')
    args = parser.parse_args(argv)
    if not args.email or not args.password:
        parser.error("--email and --password (or ADMIN_EMAIL / ADMIN_PASSWORD) are required")

    settings = settings or get_settings()
    configure_logging(settings)
    db = Database(settings)
    db.init_db()
    try:
        admin, created = seed_admin(db, args.email, args.password, args.fullname)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1
    finally:
        db.dispose()
    print(f"{'Created' if created else 'Already present'}: admin {admin.email} ({admin.id})")
    return 0


if __name__ == '__main__':
    sys.exit(main())
