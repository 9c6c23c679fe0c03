from collections.abc import Generator

from .session import SessionLocalLedger


def get_ledger_db() -> Generator:
    db = SessionLocalLedger()
    try:
        yield db
    finally:
        db.close()
