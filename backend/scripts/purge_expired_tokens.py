"""
Delete expired refresh-token sessions.

Reads already re-check expiry, so this is housekeeping only. Run from cron:
python scripts/purge_expired_tokens.py
"""

import logging
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from sqlalchemy.exc import SQLAlchemyError

from app.core.database import SessionLocal
from app.services.session_service import session_service


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
    db = SessionLocal()
    try:
        removed = session_service.purge_expired(db)
    except SQLAlchemyError as e:
        print(f"Cannot purge expired tokens: {e}")
        sys.exit(1)
    finally:
        db.close()
    print(f"Removed {removed} expired refresh token(s).")


if __name__ == "__main__":
    main()
