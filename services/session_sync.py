"""Keep ``session_active`` consistent with ``is_active`` on broker credentials."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import BrokerCredential
from services.errors import BadRequest

logger = logging.getLogger(__name__)


def sync_broker_sessions(session: Session) -> int:
    """Clear the session flag of every inactive credential.

    Returns the number of rows changed. Works with the Flask-SQLAlchemy
    session and with a standalone worker session alike.
    """

    result = session.execute(
        update(BrokerCredential)
        .where(
            BrokerCredential.is_active.is_(False),
            BrokerCredential.session_active.is_(True),
        )
        .values(session_active=False, last_activity=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    session.commit()
    count = result.rowcount or 0
    if count:
        logger.info("Deactivated %s stale broker sessions", count)
    return count


def set_session_state(session: Session, credential: BrokerCredential, active: bool) -> BrokerCredential:
    """Set the session flag; an inactive broker can never hold a session."""

    if active and not credential.is_active:
        credential.session_active = False
        session.commit()
        raise BadRequest("Broker is not active. Please authenticate first.")
    credential.session_active = bool(active)
    credential.last_activity = datetime.now(timezone.utc)
    session.commit()
    return credential
