import bcrypt
import structlog

import ledger
from database import init_db, SessionLocal, User
from logging_setup import setup_logging

logger = structlog.get_logger()


def seed_users(db=None):
    owns_session = db is None
    if owns_session:
        init_db()
        db = SessionLocal()
    try:
        if db.query(User).first():
            logger.info("seed_skipped", reason="users_exist")
            return

        admin_pw = bcrypt.hashpw(b"admin123", bcrypt.gensalt()).decode('utf-8')
        admin = User(username="admin", email="admin@example.com", password_hash=admin_pw, role="admin")
        db.add(admin)
        db.commit()

        ledger.get_categories(db, admin.id)
        logger.info("database_seeded", user_id=admin.id)
    finally:
        if owns_session:
            db.close()


if __name__ == "__main__":
    setup_logging()
    seed_users()
