"""Run one expired-booking cleanup pass from cron.

Usage::

    python -m services.bookings_service.cleanup

Exits non-zero when the pass fails; nothing is persisted in that case and the
next run retries the same bookings.
"""

import sys
import logging

from shared.db import get_session, init_tables
from shared.logging_setup import configure_logging
from shared.reconciliation import ReconciliationError, reconcile_expired_bookings

logger = logging.getLogger(__name__)


def main() -> int:
    configure_logging()
    init_tables()
    session = get_session()
    try:
        result = reconcile_expired_bookings(session)
    except ReconciliationError as exc:
        logger.error("cleanup failed: %s", exc)
        return 1
    finally:
        session.close()
    logger.info("completed %(seat_bookings)d seat and %(meeting_bookings)d meeting bookings", result)
    return 0


if __name__ == '__main__':
    sys.exit(main())
